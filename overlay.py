# overlay.py
"""Process-local fallback store used while the durable store cannot be written.

Nothing here survives a restart, and two processes never see each other's
overlay. Records created here are lost when the process exits, and a second
worker behind the same load balancer will answer differently for them. That
gap is accepted: the overlay exists so a read-only deployment can keep
working, not to replace the database.

Ephemeral ids are negative (-1, -2, ...) so they never collide with the
positive autoincrement ids of the durable store, even after a restart.
"""
import itertools
import logging
import threading
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel

from errors import AlreadyUsed, DuplicateCode, TokenCollision, TokenNotFound
from schemas import PromoCodeOut, TokenOut
from stores import PromoStore, token_prefix

logger = logging.getLogger(__name__)


class Tombstone(BaseModel):
    """Marks a durable promo code as deleted for this process."""

    id: int
    deleted_at: datetime


class EphemeralOverlay(PromoStore):
    def __init__(self):
        self._lock = threading.RLock()
        self.clear()

    def clear(self):
        with self._lock:
            # id -> live overlay record or a tombstone for a durable id
            self._codes: dict[int, PromoCodeOut | Tombstone] = {}
            self._tokens: dict[str, TokenOut] = {}
            # durable tokens consumed while the durable store was read-only
            self._shadows: dict[str, TokenOut] = {}
            self._code_ids = itertools.count(-1, -1)
            self._token_ids = itertools.count(-1, -1)

    def clear_promo_codes(self):
        with self._lock:
            self._codes = {}

    def _live_codes(self) -> list[PromoCodeOut]:
        return [rec for rec in self._codes.values() if isinstance(rec, PromoCodeOut)]

    # ----------------------------------------------------------------
    # Promo codes
    # ----------------------------------------------------------------

    def create_promo_code(self, code: str, description: str) -> PromoCodeOut:
        with self._lock:
            if any(rec.code == code for rec in self._live_codes()):
                raise DuplicateCode()
            rec = PromoCodeOut(id=next(self._code_ids), code=code, description=description)
            self._codes[rec.id] = rec
        logger.info("Overlay promo code created id=%s code=%s", rec.id, code)
        return rec

    def get_promo_code_by_id(self, promo_code_id: int) -> PromoCodeOut | None:
        with self._lock:
            rec = self._codes.get(promo_code_id)
        return rec if isinstance(rec, PromoCodeOut) else None

    def get_promo_code_by_code(self, code: str) -> PromoCodeOut | None:
        with self._lock:
            return next((rec for rec in self._live_codes() if rec.code == code), None)

    def list_promo_codes(self) -> list[PromoCodeOut]:
        with self._lock:
            live = self._live_codes()
        return sorted(live, key=lambda rec: (rec.code, rec.id))

    def delete_promo_code(self, promo_code_id: int) -> bool:
        with self._lock:
            if not isinstance(self._codes.get(promo_code_id), PromoCodeOut):
                return False
            del self._codes[promo_code_id]
        logger.info("Overlay promo code removed id=%s", promo_code_id)
        return True

    def tombstone(self, promo_code_id: int) -> Tombstone:
        stone = Tombstone(id=promo_code_id, deleted_at=datetime.now(timezone.utc))
        with self._lock:
            self._codes[promo_code_id] = stone
        logger.info("Durable promo code tombstoned id=%s", promo_code_id)
        return stone

    def is_tombstoned(self, promo_code_id: int) -> bool:
        with self._lock:
            return isinstance(self._codes.get(promo_code_id), Tombstone)

    def tombstoned_ids(self) -> set[int]:
        with self._lock:
            return {rec.id for rec in self._codes.values() if isinstance(rec, Tombstone)}

    # ----------------------------------------------------------------
    # Tokens
    # ----------------------------------------------------------------

    def create_token(self, token: str, promo_code_id: int) -> TokenOut:
        with self._lock:
            if token in self._tokens:
                raise TokenCollision()
            rec = TokenOut(
                id=next(self._token_ids),
                token=token,
                promo_code_id=promo_code_id,
                created_at=datetime.now(timezone.utc),
            )
            self._tokens[token] = rec
        logger.info("Overlay token issued promo_code_id=%s token=%s", promo_code_id, token_prefix(token))
        return rec

    def get_token(self, token: str) -> TokenOut | None:
        with self._lock:
            return self._tokens.get(token)

    def remove_token(self, token: str) -> bool:
        with self._lock:
            if self._tokens.pop(token, None) is None:
                return False
        logger.info("Overlay token removed token=%s", token_prefix(token))
        return True

    def mark_token_used(self, token: str, result: Any) -> TokenOut:
        with self._lock:
            rec = self._tokens.get(token)
            if rec is None:
                raise TokenNotFound()
            if rec.used:
                raise AlreadyUsed()
            rec = rec.model_copy(
                update={"used": True, "used_at": datetime.now(timezone.utc), "result": result}
            )
            self._tokens[token] = rec
        return rec

    def shadow_token_used(self, durable: TokenOut, result: Any) -> TokenOut:
        """Record consumption of a durable token that could not be written back."""
        with self._lock:
            if durable.used or durable.token in self._shadows:
                raise AlreadyUsed()
            rec = durable.model_copy(
                update={"used": True, "used_at": datetime.now(timezone.utc), "result": result}
            )
            self._shadows[durable.token] = rec
        logger.warning("Durable token consumed in overlay only token=%s", token_prefix(durable.token))
        return rec

    def get_shadow(self, token: str) -> TokenOut | None:
        with self._lock:
            return self._shadows.get(token)

    def list_tokens_with_code(self) -> list[TokenOut]:
        with self._lock:
            codes = {rec.id: rec.code for rec in self._live_codes()}
            tokens = [
                rec.model_copy(update={"promo_code": codes.get(rec.promo_code_id)})
                for rec in self._tokens.values()
            ]
        return sorted(tokens, key=lambda rec: (rec.created_at, rec.id), reverse=True)
