import logging
import secrets
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.openapi.utils import get_openapi
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from pymongo import MongoClient
from pymongo.errors import PyMongoError

from config import Settings, get_settings
from database import Database, get_db
from errors import Unauthorized, register_exception_handlers
from middleware import InputSanitizerMiddleware, RateLimiter, RateLimitMiddleware, SecurityHeadersMiddleware
from reservations import ReservationService
from restaurants import RestaurantService
from schemas import (
    LoginRequest,
    RegisterRequest,
    ReservationCreate,
    ReservationUpdate,
    RestaurantCreate,
    RestaurantUpdate,
)
from security import TOKEN_COOKIE, get_app_settings, get_current_user, require_role
from users import UserService

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"
DOCS_PATH = "/api-docs"

docs_security = HTTPBasic(auto_error=False)

# Service providers

def get_user_service(db: Database = Depends(get_db), settings: Settings = Depends(get_app_settings)) -> UserService:
    return UserService(db, settings)


def get_restaurant_service(db: Database = Depends(get_db)) -> RestaurantService:
    return RestaurantService(db)


def get_reservation_service(
    db: Database = Depends(get_db), settings: Settings = Depends(get_app_settings)
) -> ReservationService:
    return ReservationService(db, max_active=settings.max_active_reservations)


def send_token_response(response: Response, token: str, settings: Settings) -> dict:
    response.set_cookie(
        TOKEN_COOKIE,
        token,
        expires=datetime.now(timezone.utc) + timedelta(days=settings.jwt_cookie_expire_days),
        httponly=True,
        secure=settings.is_production,
    )
    return {"success": True, "token": token}


# Auth Routes
auth_router = APIRouter(prefix="/auth", tags=["Auth"])


@auth_router.post("/register", status_code=status.HTTP_201_CREATED)
def register(
    payload: RegisterRequest,
    response: Response,
    users: UserService = Depends(get_user_service),
    settings: Settings = Depends(get_app_settings),
):
    _, token = users.register(payload)
    return send_token_response(response, token, settings)


@auth_router.post("/login")
def login(
    payload: LoginRequest,
    response: Response,
    users: UserService = Depends(get_user_service),
    settings: Settings = Depends(get_app_settings),
):
    _, token = users.login(payload.email, payload.password)
    return send_token_response(response, token, settings)


@auth_router.get("/me")
def me(current_user=Depends(get_current_user)):
    return {"success": True, "data": current_user}


@auth_router.get("/logout")
def logout(response: Response, current_user=Depends(get_current_user)):
    response.set_cookie(
        TOKEN_COOKIE,
        "none",
        expires=datetime.now(timezone.utc) + timedelta(seconds=10),
        httponly=True,
    )
    return {"success": True, "data": {}}


# Restaurant Routes
restaurant_router = APIRouter(prefix="/restaurants", tags=["Restaurants"])


@restaurant_router.get("")
def list_restaurants(request: Request, restaurants: RestaurantService = Depends(get_restaurant_service)):
    data, pagination, _ = restaurants.list(request.query_params)
    return {"success": True, "count": len(data), "pagination": pagination, "data": data}


@restaurant_router.get("/{restaurant_id}")
def get_restaurant(restaurant_id: str, restaurants: RestaurantService = Depends(get_restaurant_service)):
    return {"success": True, "data": restaurants.get(restaurant_id)}


@restaurant_router.post("", status_code=status.HTTP_201_CREATED)
def create_restaurant(
    payload: RestaurantCreate,
    restaurants: RestaurantService = Depends(get_restaurant_service),
    admin=Depends(require_role("admin")),
):
    return {"success": True, "data": restaurants.create(payload)}


@restaurant_router.put("/{restaurant_id}")
def update_restaurant(
    restaurant_id: str,
    payload: RestaurantUpdate,
    restaurants: RestaurantService = Depends(get_restaurant_service),
    admin=Depends(require_role("admin")),
):
    return {"success": True, "data": restaurants.update(restaurant_id, payload)}


@restaurant_router.delete("/{restaurant_id}")
def delete_restaurant(
    restaurant_id: str,
    restaurants: RestaurantService = Depends(get_restaurant_service),
    admin=Depends(require_role("admin")),
):
    restaurants.delete(restaurant_id)
    return {"success": True, "data": {}}


@restaurant_router.get("/{restaurant_id}/reservations", tags=["Reservations"])
def list_restaurant_reservations(
    restaurant_id: str,
    reservations: ReservationService = Depends(get_reservation_service),
    current_user=Depends(get_current_user),
):
    data = reservations.list(current_user, restaurant_id)
    return {"success": True, "count": len(data), "data": data}


@restaurant_router.post("/{restaurant_id}/reservations", status_code=status.HTTP_201_CREATED, tags=["Reservations"])
def create_reservation(
    restaurant_id: str,
    payload: ReservationCreate,
    reservations: ReservationService = Depends(get_reservation_service),
    current_user=Depends(get_current_user),
):
    return {"success": True, "data": reservations.create(current_user, restaurant_id, payload)}


# Reservation Routes
reservation_router = APIRouter(prefix="/reservations", tags=["Reservations"])


@reservation_router.get("")
def list_reservations(
    reservations: ReservationService = Depends(get_reservation_service),
    current_user=Depends(get_current_user),
):
    data = reservations.list(current_user)
    return {"success": True, "count": len(data), "data": data}


@reservation_router.get("/{reservation_id}")
def get_reservation(
    reservation_id: str,
    reservations: ReservationService = Depends(get_reservation_service),
    current_user=Depends(get_current_user),
):
    return {"success": True, "data": reservations.get(current_user, reservation_id)}


@reservation_router.put("/{reservation_id}")
def update_reservation(
    reservation_id: str,
    payload: ReservationUpdate,
    reservations: ReservationService = Depends(get_reservation_service),
    current_user=Depends(get_current_user),
):
    return {"success": True, "data": reservations.update(current_user, reservation_id, payload)}


@reservation_router.delete("/{reservation_id}")
def delete_reservation(
    reservation_id: str,
    reservations: ReservationService = Depends(get_reservation_service),
    current_user=Depends(get_current_user),
):
    reservations.delete(current_user, reservation_id)
    return {"success": True, "data": {}}


# Docs

def require_docs_user(request: Request, credentials: Optional[HTTPBasicCredentials] = Depends(docs_security)):
    settings: Settings = request.app.state.settings
    challenge = {"WWW-Authenticate": "Basic"}
    if credentials is None or not settings.swagger_user or not settings.swagger_password:
        raise Unauthorized("Authentication required", headers=challenge)
    user_ok = secrets.compare_digest(credentials.username.encode(), settings.swagger_user.encode())
    pass_ok = secrets.compare_digest(credentials.password.encode(), settings.swagger_password.encode())
    if not (user_ok and pass_ok):
        raise Unauthorized("Authentication required", headers=challenge)
    return credentials.username


docs_router = APIRouter(include_in_schema=False)


@docs_router.get(DOCS_PATH)
def swagger_ui(user=Depends(require_docs_user)):
    return get_swagger_ui_html(openapi_url=f"{DOCS_PATH}/openapi.json", title="Restaurant Reservation API")


@docs_router.get(f"{DOCS_PATH}/openapi.json")
def openapi_json(request: Request, user=Depends(require_docs_user)):
    return request.app.openapi()


def custom_openapi(app: FastAPI):
    def build():
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(
            title=app.title,
            version=app.version,
            description=app.description,
            routes=app.routes,
        )
        schemes = schema.setdefault("components", {}).setdefault("securitySchemes", {})
        schemes["bearerAuth"] = {"type": "http", "scheme": "bearer", "bearerFormat": "JWT"}
        schema["security"] = [{"bearerAuth": []}]
        app.openapi_schema = schema
        return schema
    return build


# Utility endpoints
utility_router = APIRouter()


@utility_router.get("/")
def root():
    return {"success": True, "message": "Restaurant Reservation API running"}


@utility_router.get("/health")
def health(db: Database = Depends(get_db)):
    try:
        db.ping()
    except PyMongoError as e:
        logger.error("Health check failed: %s", e)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"success": False, "database": "unavailable"},
        )
    return {"success": True, "database": "ok"}


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def create_app(settings: Optional[Settings] = None, client: Optional[MongoClient] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)

    db = Database(settings.mongo_uri, settings.mongo_db_name, client=client)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting Restaurant Reservation API (env=%s)", settings.environment)
        db.connect()
        yield
        logger.info("Shutting down Restaurant Reservation API")
        db.close()

    app = FastAPI(
        title="Restaurant Reservation API",
        version="1.0.0",
        description="A simple Restaurant Reservation API",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.db = db
    app.openapi = custom_openapi(app)

    register_exception_handlers(app)

    app.add_middleware(InputSanitizerMiddleware)
    app.add_middleware(
        RateLimitMiddleware,
        limiter=RateLimiter(settings.rate_limit_max_requests, settings.rate_limit_window_seconds),
        enabled=settings.rate_limit_enabled,
        trust_proxy=settings.trust_proxy,
    )
    app.add_middleware(SecurityHeadersMiddleware, docs_path=DOCS_PATH, hsts=settings.is_production)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials="*" not in settings.cors_origins_list,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    for router in (auth_router, restaurant_router, reservation_router):
        app.include_router(router, prefix=API_PREFIX)
    app.include_router(docs_router)
    app.include_router(utility_router)
    return app


def run() -> None:
    settings = get_settings()
    try:
        uvicorn.run(app, host=settings.host, port=settings.port)
    except Exception:
        logger.exception("Fatal error, shutting down")
        sys.exit(1)


app = create_app()

if __name__ == "__main__":
    run()
