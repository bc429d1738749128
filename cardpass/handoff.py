"""
Redemption handoff tokens.

A successful redemption returns a signed, time-limited token naming the
activated code. The card-creation step accepts only such a token, so a card
can never be created for a code that was not redeemed through this service.
"""

from __future__ import annotations

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from .errors import ValidationError

_SALT = "cardpass.handoff"


class Handoff:
    def __init__(self, secret: str) -> None:
        self._serializer = URLSafeTimedSerializer(secret, salt=_SALT)

    def issue(self, code: str) -> str:
        return self._serializer.dumps({"code": code})

    def resolve(self, token: str, max_age: int) -> str:
        try:
            data = self._serializer.loads(token, max_age=max_age)
        except SignatureExpired:
            raise ValidationError(
                "the redemption session expired; contact support with your code"
            ) from None
        except BadSignature:
            raise ValidationError("invalid handoff token") from None
        code = data.get("code") if isinstance(data, dict) else None
        if not code:
            raise ValidationError("invalid handoff token")
        return code
