from enum import Enum
from typing import Optional, List, Dict, Any, Set
from datetime import datetime
from pydantic import BaseModel, Field, field_validator


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    DECLINED = "declined"
    COMPLETED = "completed"


class ApplicationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class MutationType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class Booking(BaseModel):
    id: str
    customer_id: str
    masseur_id: str
    massage_type_id: str
    scheduled_time: datetime
    duration_minutes: int
    status: BookingStatus
    created_at: Optional[datetime] = None

    @field_validator("id", "customer_id", "masseur_id", "massage_type_id", mode="before")
    @classmethod
    def _ids_as_text(cls, value: Any) -> Any:
        # Supabase may hand back integer or uuid keys
        return str(value) if value is not None else value

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Booking":
        return cls.model_validate(row)


class MasseurApplication(BaseModel):
    masseuse_id: str
    status: ApplicationStatus = ApplicationStatus.PENDING
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    bio: Optional[str] = None
    address: Optional[str] = None
    location_lat: Optional[float] = None
    location_long: Optional[float] = None
    massage_types: List[str] = Field(default_factory=list)
    submitted_at: Optional[datetime] = None

    @field_validator("masseuse_id", mode="before")
    @classmethod
    def _id_as_text(cls, value: Any) -> Any:
        return str(value) if value is not None else value

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "MasseurApplication":
        return cls.model_validate(row)


class ApplicationProfile(BaseModel):
    """Profile fields a provider submits with an application."""
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    bio: Optional[str] = None
    address: Optional[str] = None
    location_lat: Optional[float] = None
    location_long: Optional[float] = None
    massage_types: List[str] = Field(default_factory=list)


class ChangeEvent(BaseModel):
    """One row mutation delivered by the store's change feed."""
    mutation_type: MutationType
    table: str
    new_row: Dict[str, Any] = Field(default_factory=dict)
    old_row: Dict[str, Any] = Field(default_factory=dict)
    commit_timestamp: Optional[str] = None


class Identity(BaseModel):
    id: str
    capabilities: Set[str] = Field(default_factory=set)
