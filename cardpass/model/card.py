from __future__ import annotations
import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import CapacityError, ValidationError
from ..helpers import ALNUM, UPPER_ALNUM, is_valid_email, random_token
from .db import Card

COLOR_THEMES = ("blue", "green", "purple", "pink", "orange", "dark")


@dataclass(frozen=True)
class CardInput:
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    whatsapp: Optional[str] = None
    job_title: Optional[str] = None
    company: Optional[str] = None
    website: Optional[str] = None
    bio: Optional[str] = None
    color_theme: str = "blue"

    def validate(self) -> "CardInput":
        if not (self.name or "").strip():
            raise ValidationError("card name is required")
        if self.color_theme not in COLOR_THEMES:
            raise ValidationError(
                f"color_theme must be one of {', '.join(COLOR_THEMES)}"
            )
        if not (self.email or self.phone or self.whatsapp):
            raise ValidationError(
                "at least one contact (email, phone or whatsapp) is required"
            )
        if self.email and not is_valid_email(self.email):
            raise ValidationError("card email is not a valid address")
        return self


async def get_card_for_code(db: AsyncSession, code: str) -> Optional[Card]:
    return (await db.execute(
        select(Card).where(Card.activation_code == code)
    )).scalar_one_or_none()


async def _unique_value(db: AsyncSession, column: str, length: int,
                        alphabet: str, max_attempts: int) -> str:
    # column is one of the fixed names below, never user input
    for _ in range(max_attempts):
        value = random_token(length, alphabet)
        hit = (await db.execute(
            text(f"SELECT 1 FROM cards WHERE {column} = :v"), {"v": value}
        )).first()
        if hit is None:
            return value
    raise CapacityError(f"could not generate a unique card {column}")


async def insert_card(
    db: AsyncSession, *, data: CardInput, plan: str, owner_name: str,
    owner_email: Optional[str], now: float,
    activation_code: Optional[str] = None, payment_id: Optional[str] = None,
    max_attempts: int = 5,
) -> Card:
    card = Card(
        id=uuid.uuid4().hex,
        code=await _unique_value(db, "code", 6, UPPER_ALNUM, max_attempts),
        slug=await _unique_value(db, "slug", 10, ALNUM, max_attempts),
        activation_code=activation_code,
        payment_id=payment_id,
        plan=plan,
        owner_name=owner_name,
        owner_email=owner_email,
        name=data.name.strip(),
        email=data.email,
        phone=data.phone,
        whatsapp=data.whatsapp,
        job_title=data.job_title,
        company=data.company,
        website=data.website,
        bio=data.bio,
        color_theme=data.color_theme,
        status="active",
        created_at=now,
    )
    db.add(card)
    await db.flush()
    return card
