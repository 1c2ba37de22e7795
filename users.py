"""Identity store: registration, login and session lookup."""

import logging
from typing import Dict, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError
from pymongo.errors import DuplicateKeyError

from config import Settings
from database import USERS, Database, now
from errors import InvalidCredentials, NotFound, ValidationError, field_errors
from schemas import RegisterRequest, User as UserSchema
from security import create_access_token, hash_password, public_user, verify_password

logger = logging.getLogger(__name__)


class UserService:
    def __init__(self, db: Database, settings: Settings):
        self.db = db
        self.settings = settings

    def issue_token(self, user_id: str) -> str:
        return create_access_token({"sub": user_id}, self.settings)

    def register(self, payload: RegisterRequest) -> Tuple[Dict, str]:
        try:
            user_doc = UserSchema(
                name=payload.name,
                tel=payload.tel,
                email=payload.email.lower(),
                password_hash=hash_password(payload.password),
                role=payload.role,
                createdAt=now(),
            ).model_dump()
        except PydanticValidationError as exc:
            raise ValidationError(errors=field_errors(exc.errors()))
        try:
            res = self.db[USERS].insert_one(user_doc)
        except DuplicateKeyError:
            raise ValidationError("Email already registered", errors={"email": "Email already registered"})
        user_doc["_id"] = res.inserted_id
        logger.info("Registered user %s with role %s", res.inserted_id, user_doc["role"])
        return public_user(user_doc), self.issue_token(str(res.inserted_id))

    def login(self, email: Optional[str], password: Optional[str]) -> Tuple[Dict, str]:
        if not email or not password:
            raise ValidationError("Please provide an email and password")
        user = self.db[USERS].find_one({"email": email.strip().lower()})
        if not user:
            raise NotFound("User not found")
        if not verify_password(password, user.get("password_hash", "")):
            logger.info("Failed login for user %s", user["_id"])
            raise InvalidCredentials()
        return public_user(user), self.issue_token(str(user["_id"]))

