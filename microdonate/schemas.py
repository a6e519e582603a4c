from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

# --------------------------
# User & Auth Models
# --------------------------
Role = Literal["donor", "admin"]
Gender = Literal["male", "female", "other"]


class RegisterIn(BaseModel):
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    age: int = Field(gt=0)
    gender: Gender = "other"
    email: EmailStr
    password: str
    confirm_password: str


class ResendVerificationIn(BaseModel):
    email: EmailStr


class LoginIn(BaseModel):
    email: EmailStr
    password: str
    two_factor_code: Optional[str] = None
    backup_code: Optional[str] = None


class ProfileFields(BaseModel):
    phone_number: Optional[str] = None
    address: Optional[str] = None
    preferred_causes: Optional[List[str]] = None


class ProfileIn(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    age: Optional[int] = Field(default=None, gt=0)
    gender: Optional[Gender] = None
    profile: Optional[ProfileFields] = None


class RoleIn(BaseModel):
    role: Role


class TwoFactorCodeIn(BaseModel):
    code: str = Field(min_length=1)


class PasswordIn(BaseModel):
    password: str = Field(min_length=1)


# --------------------------
# Causes
# --------------------------
CauseStatus = Literal["active", "completed", "archived"]
Category = Literal["education", "healthcare", "environment", "disaster-relief", "poverty", "animal-welfare", "other"]


def as_utc(v: Optional[datetime]) -> Optional[datetime]:
    # naive datetimes from clients are taken as UTC
    if v is not None and v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v


class CauseIn(BaseModel):
    name: str = Field(min_length=1)
    description: str = Field(min_length=1)
    category: Category = "other"
    target_amount: float = Field(gt=0)
    image_url: str = ""
    end_date: Optional[datetime] = None

    @field_validator("end_date")
    @classmethod
    def end_date_utc(cls, v):
        return as_utc(v)


class CauseUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = Field(default=None, min_length=1)
    category: Optional[Category] = None
    target_amount: Optional[float] = Field(default=None, gt=0)
    status: Optional[CauseStatus] = None
    image_url: Optional[str] = None
    end_date: Optional[datetime] = None

    @field_validator("end_date")
    @classmethod
    def end_date_utc(cls, v):
        return as_utc(v)


# --------------------------
# Donations
# --------------------------
class DonationIn(BaseModel):
    cause_id: str
    amount: float
    payment_id: Optional[str] = None
    payment_method: Optional[str] = None
    simulate_failure: bool = False


class Allocation(BaseModel):
    cause_id: str
    amount: float


class MultiDonationIn(BaseModel):
    causes: List[Allocation]
    total_amount: float
    payment_id: Optional[str] = None
    payment_method: Optional[str] = None
    simulate_failure: bool = False


# --------------------------
# Platform config
# --------------------------
CurrencyCode = Literal["USD", "EUR", "GBP", "INR", "CAD", "AUD", "JPY"]


class MinimumDonationUpdate(BaseModel):
    amount: Optional[float] = Field(default=None, ge=0.01)
    enabled: Optional[bool] = None


class CurrencyUpdate(BaseModel):
    code: Optional[CurrencyCode] = None
    symbol: Optional[str] = Field(default=None, min_length=1)
    position: Optional[Literal["before", "after"]] = None
    decimal_places: Optional[int] = Field(default=None, ge=0, le=4)
    thousands_separator: Optional[str] = None
    decimal_separator: Optional[str] = None


class ConfigUpdate(BaseModel):
    minimum_donation: Optional[MinimumDonationUpdate] = None
    currency: Optional[CurrencyUpdate] = None
