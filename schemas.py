"""
Database Schemas

Pydantic models for the documents stored in MongoDB and for the request
bodies the API accepts. Collection names are plural: users, medicines,
carts, orders, categories, banners.
"""

from pydantic import BaseModel, Field, EmailStr
from typing import Optional, List, Literal

Role = Literal["admin", "seller", "user"]
OrderStatus = Literal["requested", "paid", "rejected"]
BannerStatus = Literal["requested", "added"]


class User(BaseModel):
    email: EmailStr = Field(..., description="Email address, unique")
    name: Optional[str] = Field(None, description="Display name")
    photo: Optional[str] = Field(None, description="Avatar URL")
    password: str = Field(..., min_length=6, description="Plain on input, stored as password_hash")
    role: Literal["user", "seller"] = Field("user", description="Requested role: user | seller")


class SellerRef(BaseModel):
    email: EmailStr
    name: Optional[str] = None


class Medicine(BaseModel):
    name: str
    genericName: Optional[str] = None
    description: Optional[str] = None
    image: Optional[str] = None
    category: str
    company: Optional[str] = None
    massUnit: Optional[str] = Field(None, description="e.g. mg or ml")
    price: float = Field(..., ge=0)
    discount: float = Field(0, ge=0, le=100, description="Percent")


class CartItem(BaseModel):
    medicineId: str
    quantity: int = Field(1, ge=1)


class OrderLine(BaseModel):
    medicineId: str
    quantity: int = Field(..., ge=1)


class Order(BaseModel):
    items: List[OrderLine] = Field(..., min_length=1)
    transactionId: str
    name: Optional[str] = None


class Category(BaseModel):
    name: str
    image: Optional[str] = None


class CategoryUpdate(BaseModel):
    name: Optional[str] = None
    image: Optional[str] = None


class Banner(BaseModel):
    medicineId: str
    image: str
    description: Optional[str] = None
