"""
Database Schemas for the Restaurant Reservation API

MongoDB collections are described below using Pydantic models. Each stored
model validates a full document before it is written; the request models
describe what clients may send.

Collections:
- users: registered accounts (user, admin)
- restaurants: the catalog
- reservations: the ledger, referencing a user and a restaurant
"""

from datetime import datetime
from typing import Any, Literal, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

Role = Literal["user", "admin"]


class User(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    tel: str = Field(..., min_length=1)
    email: EmailStr
    password_hash: str = Field(..., description="BCrypt hash of password")
    role: Role = Field("user")
    createdAt: datetime

    @field_validator("name", "tel", mode="before")
    @classmethod
    def strip(cls, v):
        return v.strip() if isinstance(v, str) else v


class Restaurant(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    address: str = Field(..., min_length=1)
    tel: str = Field(..., min_length=1)
    openingHours: str = Field(..., min_length=1, description="Opening and closing times, e.g. 09:00-22:00")
    createdAt: datetime

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, v):
        return v.strip() if isinstance(v, str) else v


class Reservation(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    apptDate: datetime
    user: ObjectId
    restaurant: ObjectId
    createdAt: datetime


# Request models

class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    tel: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    role: Role = "user"


class LoginRequest(BaseModel):
    # Optional so a missing field gets the login-specific message
    email: Optional[str] = None
    password: Optional[str] = None


class RestaurantCreate(BaseModel):
    name: str
    address: str
    tel: str
    openingHours: str


class RestaurantUpdate(BaseModel):
    name: Optional[str] = None
    address: Optional[str] = None
    tel: Optional[str] = None
    openingHours: Optional[str] = None


class ReservationCreate(BaseModel):
    apptDate: datetime


class ReservationUpdate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    apptDate: Optional[Any] = None
