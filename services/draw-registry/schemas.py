from typing import Optional

from pydantic import BaseModel, Field, field_validator


class ParticipantCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    email: Optional[str] = Field(None, max_length=255)
    phone: Optional[str] = Field(None, max_length=32)
    id_tag: Optional[str] = Field(None, max_length=64)

    @field_validator("name")
    @classmethod
    def strip_name(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("name must not be blank")
        return v


class ParticipantUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    email: Optional[str] = Field(None, max_length=255)
    phone: Optional[str] = Field(None, max_length=32)
    id_tag: Optional[str] = Field(None, max_length=64)


class PrizeCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    image: Optional[str] = Field(None, max_length=1024)
    quota: int = Field(..., ge=1)


class PrizeUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    image: Optional[str] = Field(None, max_length=1024)
    quota: Optional[int] = Field(None, ge=1)
    remaining_quota: Optional[int] = Field(None, ge=0)


class BulkRemoveRequest(BaseModel):
    ids: list[str] = Field(..., min_length=1)
