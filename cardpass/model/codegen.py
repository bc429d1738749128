"""
Activation-code generation.

Codes are ``<prefix><N uppercase alphanumerics>`` (``CD-7KQ2ZP`` by default).
Uniqueness is checked against the store *before* insert, retrying a bounded
number of times per code; the unique index on ``activation_codes.code``
remains the final arbiter for races between concurrent generators.
"""

from __future__ import annotations
from typing import Callable, Iterable, List, Set

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings
from ..errors import CapacityError
from ..helpers import UPPER_ALNUM, random_token
from ..infra.log import get_logger

log = get_logger("codegen")

_EXISTS_CHUNK = 500


async def existing_codes(db: AsyncSession, codes: Iterable[str]) -> Set[str]:
    codes = list(codes)
    found: Set[str] = set()
    stmt = text(
        "SELECT code FROM activation_codes WHERE code IN :codes"
    ).bindparams(bindparam("codes", expanding=True))
    for i in range(0, len(codes), _EXISTS_CHUNK):
        chunk = codes[i:i + _EXISTS_CHUNK]
        rows = (await db.execute(stmt, {"codes": chunk})).all()
        found.update(r[0] for r in rows)
    return found


class CodeGenerator:
    def __init__(self, prefix: str = "CD-", length: int = 6,
                 max_attempts: int = 5,
                 rand: Callable[[int, str], str] = random_token) -> None:
        # lookups upper-case their input
        self.prefix = prefix.upper()
        self.length = length
        self.max_attempts = max_attempts
        self._rand = rand

    @classmethod
    def from_settings(cls, settings: Settings) -> "CodeGenerator":
        return cls(
            prefix=settings.code_prefix,
            length=settings.code_length,
            max_attempts=settings.code_max_attempts,
        )

    def candidate(self) -> str:
        return self.prefix + self._rand(self.length, UPPER_ALNUM)

    async def generate(self, db: AsyncSession) -> str:
        return (await self.generate_batch(db, 1))[0]

    async def generate_batch(self, db: AsyncSession, quantity: int) -> List[str]:
        """Return `quantity` distinct codes not yet present in the store.

        Every slot gets at most `max_attempts` draws; a slot still colliding
        after that means the code space is (nearly) exhausted.
        """
        picked: List[str] = []
        seen: Set[str] = set()

        for _ in range(self.max_attempts):
            need = quantity - len(picked)
            if need == 0:
                break
            fresh = []
            for _ in range(need):
                c = self.candidate()
                if c not in seen:
                    seen.add(c)
                    fresh.append(c)
            taken = await existing_codes(db, fresh)
            picked.extend(c for c in fresh if c not in taken)

        if len(picked) < quantity:
            log.error(
                "code_space_exhausted",
                requested=quantity,
                generated=len(picked),
                prefix=self.prefix,
                length=self.length,
                max_attempts=self.max_attempts,
            )
            raise CapacityError(
                f"could not generate {quantity} unique codes after "
                f"{self.max_attempts} attempts",
                requested=quantity,
            )
        return picked
