# stores.py
"""Storage interface shared by the durable store and the ephemeral overlay,
plus the SQLAlchemy-backed durable implementation.

The components in registry.py and tokens.py depend only on ``PromoStore``;
they try the durable store first and fall back to the overlay when a write
raises ``StoreUnavailable``.
"""
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Sequence

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

import models
from errors import AlreadyUsed, DuplicateCode, StoreReadOnly, StoreUnavailable, TokenCollision, TokenNotFound
from schemas import PromoCodeOut, TokenOut

logger = logging.getLogger(__name__)


def token_prefix(token: str) -> str:
    return f"{token[:8]}..."


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PromoStore(ABC):
    """Capability set common to both backends.

    Lookups return ``None`` when nothing matches; failures raise.
    """

    @abstractmethod
    def create_promo_code(self, code: str, description: str) -> PromoCodeOut:
        ...

    @abstractmethod
    def get_promo_code_by_id(self, promo_code_id: int) -> PromoCodeOut | None:
        ...

    @abstractmethod
    def get_promo_code_by_code(self, code: str) -> PromoCodeOut | None:
        ...

    @abstractmethod
    def list_promo_codes(self) -> list[PromoCodeOut]:
        """All codes, sorted by ``code`` ascending."""

    @abstractmethod
    def delete_promo_code(self, promo_code_id: int) -> bool:
        """Return False when there was nothing to delete."""

    @abstractmethod
    def create_token(self, token: str, promo_code_id: int) -> TokenOut:
        ...

    @abstractmethod
    def get_token(self, token: str) -> TokenOut | None:
        ...

    @abstractmethod
    def mark_token_used(self, token: str, result: Any) -> TokenOut:
        """Atomically flip ``used`` false -> true.

        Raises ``TokenNotFound`` or ``AlreadyUsed``; exactly one of several
        concurrent callers succeeds.
        """

    @abstractmethod
    def list_tokens_with_code(self) -> list[TokenOut]:
        """All tokens with ``promo_code`` filled in, newest first."""


def _promo_code_out(row: models.PromoCode) -> PromoCodeOut:
    return PromoCodeOut(id=row.id, code=row.code, description=row.description)


def _token_out(row: models.Token, code: str | None = None) -> TokenOut:
    return TokenOut(
        id=row.id,
        token=row.token,
        promo_code_id=row.promo_code_id,
        used=bool(row.used),
        created_at=as_utc(row.created_at),
        used_at=as_utc(row.used_at),
        result=json.loads(row.result) if row.result is not None else None,
        promo_code=code,
    )


class SqlRegistryStore(PromoStore):
    """Durable store on top of a SQLAlchemy session factory.

    Uniqueness of ``promo_codes.code`` and ``tokens.token`` is left to the
    database constraints, and the used-transition is a single conditional
    UPDATE, so concurrent requests cannot both win.
    """

    def __init__(self, session_factory, writable: bool = True):
        self._session_factory = session_factory
        self.writable = writable

    def _require_writable(self, operation: str):
        if not self.writable:
            raise StoreReadOnly(f"Durable store is read-only ({operation})")

    # ----------------------------------------------------------------
    # Promo codes
    # ----------------------------------------------------------------

    def create_promo_code(self, code: str, description: str) -> PromoCodeOut:
        self._require_writable("create_promo_code")
        try:
            with self._session_factory() as db:
                row = models.PromoCode(code=code, description=description)
                db.add(row)
                db.commit()
                db.refresh(row)
                return _promo_code_out(row)
        except IntegrityError as exc:
            raise DuplicateCode() from exc
        except SQLAlchemyError as exc:
            logger.warning("Durable write failed: create_promo_code code=%s: %s", code, exc)
            raise StoreUnavailable("Failed to create promo code") from exc

    def get_promo_code_by_id(self, promo_code_id: int) -> PromoCodeOut | None:
        try:
            with self._session_factory() as db:
                row = db.get(models.PromoCode, promo_code_id)
                return _promo_code_out(row) if row is not None else None
        except SQLAlchemyError as exc:
            logger.error("Durable read failed: get_promo_code_by_id id=%s: %s", promo_code_id, exc)
            raise StoreUnavailable("Failed to fetch promo code") from exc

    def get_promo_code_by_code(self, code: str) -> PromoCodeOut | None:
        try:
            with self._session_factory() as db:
                stmt = select(models.PromoCode).where(models.PromoCode.code == code)
                row = db.execute(stmt).scalar_one_or_none()
                return _promo_code_out(row) if row is not None else None
        except SQLAlchemyError as exc:
            logger.error("Durable read failed: get_promo_code_by_code code=%s: %s", code, exc)
            raise StoreUnavailable("Failed to fetch promo code") from exc

    def list_promo_codes(self) -> list[PromoCodeOut]:
        try:
            with self._session_factory() as db:
                stmt = select(models.PromoCode).order_by(models.PromoCode.code, models.PromoCode.id)
                return [_promo_code_out(row) for row in db.execute(stmt).scalars()]
        except SQLAlchemyError as exc:
            logger.error("Durable read failed: list_promo_codes: %s", exc)
            raise StoreUnavailable("Failed to fetch promo codes") from exc

    def delete_promo_code(self, promo_code_id: int) -> bool:
        self._require_writable("delete_promo_code")
        try:
            with self._session_factory() as db:
                res = db.execute(delete(models.PromoCode).where(models.PromoCode.id == promo_code_id))
                db.commit()
                return res.rowcount > 0
        except SQLAlchemyError as exc:
            logger.warning("Durable write failed: delete_promo_code id=%s: %s", promo_code_id, exc)
            raise StoreUnavailable("Failed to delete promo code") from exc

    def replace_promo_codes(self, entries: Sequence[tuple[str, str]]) -> list[PromoCodeOut]:
        """Drop every code and insert ``entries`` in one transaction."""
        self._require_writable("replace_promo_codes")
        try:
            with self._session_factory() as db:
                db.execute(delete(models.PromoCode))
                db.add_all(models.PromoCode(code=code, description=desc) for code, desc in entries)
                db.commit()
        except IntegrityError as exc:
            raise DuplicateCode() from exc
        except SQLAlchemyError as exc:
            logger.warning("Durable write failed: replace_promo_codes: %s", exc)
            raise StoreUnavailable("Failed to reset promo codes") from exc
        return self.list_promo_codes()

    # ----------------------------------------------------------------
    # Tokens
    # ----------------------------------------------------------------

    def create_token(self, token: str, promo_code_id: int) -> TokenOut:
        self._require_writable("create_token")
        try:
            with self._session_factory() as db:
                row = models.Token(
                    token=token,
                    promo_code_id=promo_code_id,
                    used=False,
                    created_at=datetime.now(timezone.utc),
                )
                db.add(row)
                db.commit()
                db.refresh(row)
                return _token_out(row)
        except IntegrityError as exc:
            raise TokenCollision() from exc
        except SQLAlchemyError as exc:
            logger.warning(
                "Durable write failed: create_token promo_code_id=%s token=%s: %s",
                promo_code_id, token_prefix(token), exc,
            )
            raise StoreUnavailable("Failed to generate token") from exc

    def get_token(self, token: str) -> TokenOut | None:
        try:
            with self._session_factory() as db:
                stmt = select(models.Token).where(models.Token.token == token)
                row = db.execute(stmt).scalar_one_or_none()
                return _token_out(row) if row is not None else None
        except SQLAlchemyError as exc:
            logger.error("Durable read failed: get_token token=%s: %s", token_prefix(token), exc)
            raise StoreUnavailable("Failed to fetch token") from exc

    def mark_token_used(self, token: str, result: Any) -> TokenOut:
        self._require_writable("mark_token_used")
        now = datetime.now(timezone.utc)
        try:
            with self._session_factory() as db:
                stmt = (
                    update(models.Token)
                    .where(models.Token.token == token, models.Token.used.is_(False))
                    .values(used=True, used_at=now, result=json.dumps(result))
                )
                res = db.execute(stmt)
                db.commit()

                row = db.execute(
                    select(models.Token).where(models.Token.token == token)
                ).scalar_one_or_none()
                current = _token_out(row) if row is not None else None
        except SQLAlchemyError as exc:
            logger.warning("Durable write failed: mark_token_used token=%s: %s", token_prefix(token), exc)
            raise StoreUnavailable("Failed to mark token as used") from exc

        if res.rowcount == 1:
            return current
        if current is None:
            raise TokenNotFound()
        raise AlreadyUsed()

    def list_tokens_with_code(self) -> list[TokenOut]:
        try:
            with self._session_factory() as db:
                stmt = (
                    select(models.Token, models.PromoCode.code)
                    .outerjoin(models.PromoCode, models.PromoCode.id == models.Token.promo_code_id)
                    .order_by(models.Token.created_at.desc(), models.Token.id.desc())
                )
                return [_token_out(row, code) for row, code in db.execute(stmt).all()]
        except SQLAlchemyError as exc:
            logger.error("Durable read failed: list_tokens_with_code: %s", exc)
            raise StoreUnavailable("Failed to fetch tokens") from exc
