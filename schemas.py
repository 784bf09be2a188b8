"""
Database Schemas for the Pintxopote Platform

MongoDB collections are defined below using Pydantic models. Each class name is
converted to lowercase for the collection name (User -> "user").

We will use these collections:
- user: registered customers and pub accounts
- pub: venues offering pintxopotes
- pintxopote: a pub's deal for a given day, with its like/dislike score
- order: a user's claim on a pintxopote, pending validation by the pub

Addresses and scores are embedded documents, not collections.
"""

from datetime import datetime
from typing import Annotated, List, Literal, Optional

from pydantic import AfterValidator, BaseModel, EmailStr, Field

Role = Literal["user", "pub"]
ROLES = ("user", "pub")


def check_not_blank(value: str) -> str:
    if not value.strip():
        raise ValueError("must not be blank")
    return value


NonBlankStr = Annotated[str, AfterValidator(check_not_blank)]


class UserAddress(BaseModel):
    street: NonBlankStr
    city: NonBlankStr
    postalCode: NonBlankStr
    country: NonBlankStr


class User(BaseModel):
    name: NonBlankStr
    surname: NonBlankStr
    email: EmailStr
    password: str = Field(..., description="Hashed password")
    role: List[Role] = Field(default_factory=lambda: ["user"])
    address: Optional[UserAddress] = None


class PubAddress(BaseModel):
    street: str
    city: str
    lat: Optional[str] = None
    long: Optional[str] = None


class Pub(BaseModel):
    name: str = Field(..., min_length=1)
    image: Optional[str] = Field(None, description="Image URL")
    address: PubAddress
    pintxopotes: List[str] = Field(default_factory=list, description="Pintxopote ids")
    desc: Optional[str] = None


class Score(BaseModel):
    likes: int = Field(0, ge=0)
    dislikes: int = Field(0, ge=0)

    @property
    def ratio(self) -> float:
        if self.dislikes == 0:
            return float("inf") if self.likes else 0.0
        return self.likes / self.dislikes


class Pintxopote(BaseModel):
    name: str = Field(..., min_length=1)
    date: datetime
    image: Optional[str] = Field(None, description="Image URL")
    pub: Optional[str] = Field(None, description="Reference to pub _id")
    score: Score = Field(default_factory=Score)


class Order(BaseModel):
    user: str = Field(..., description="Reference to user _id")
    pintxopote: str = Field(..., description="Reference to pintxopote _id")
    quantity: int = Field(..., ge=1)
    validated: bool = False
    date: datetime
