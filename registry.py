# registry.py
import logging
from typing import Sequence

from errors import CodeNotFound, DuplicateCode, InvalidInput, StoreUnavailable
from overlay import EphemeralOverlay
from schemas import PromoCodeOut
from stores import PromoStore, SqlRegistryStore

logger = logging.getLogger(__name__)


DEFAULT_PROMO_CODES: tuple[tuple[str, str], ...] = (
    ("FREELIST1", "Free listing promo code 1"),
    ("FREELIST2", "Free listing promo code 2"),
    ("FREELIST3", "Free listing promo code 3"),
    ("FREELIST4", "Free listing promo code 4"),
    ("FREELIST5", "Free listing promo code 5"),
    ("FREELIST6", "Free listing promo code 6"),
    ("FREELIST7", "Free listing promo code 7"),
    ("FREELIST8", "Free listing promo code 8"),
    ("FREELIST9", "Free listing promo code 9"),
    ("FREELIST10", "Free listing promo code 10"),
    ("DISCOUNT10", "10% discount promo code"),
    ("DISCOUNT15", "15% discount promo code"),
    ("DISCOUNT20", "20% discount promo code"),
    ("DISCOUNT25", "25% discount promo code"),
    ("DISCOUNT30", "30% discount promo code"),
    ("FREESHIPUS", "Free shipping in US"),
    ("FREESHIPCA", "Free shipping in Canada"),
    ("FREESHIPEU", "Free shipping in Europe"),
    ("FREESHIPUK", "Free shipping in UK"),
    ("FREESHIPAU", "Free shipping in Australia"),
    ("WELCOME10", "Welcome 10% discount"),
    ("WELCOME15", "Welcome 15% discount"),
    ("SUMMER2025", "Summer 2025 special promo"),
    ("WINTER2025", "Winter 2025 special promo"),
    ("HOLIDAY2025", "Holiday 2025 special promo"),
)


class CodeRegistry:
    """Promo-code CRUD across the durable store and the overlay.

    Writes go to the durable store first; when it raises StoreUnavailable the
    write lands in the overlay instead. ``code`` is unique across both.
    """

    def __init__(self, store: SqlRegistryStore, overlay: EphemeralOverlay):
        self.store = store
        self.overlay = overlay

    def resolve(self, promo_code_id: int) -> tuple[PromoCodeOut, PromoStore]:
        """Find a live code and the backend holding it, overlay first."""
        if self.overlay.is_tombstoned(promo_code_id):
            raise CodeNotFound()

        promo = self.overlay.get_promo_code_by_id(promo_code_id)
        if promo is not None:
            return promo, self.overlay

        promo = self.store.get_promo_code_by_id(promo_code_id)
        if promo is None:
            raise CodeNotFound()
        return promo, self.store

    def get(self, promo_code_id: int) -> PromoCodeOut:
        promo, _ = self.resolve(promo_code_id)
        return promo

    def create(self, code: str | None, description: str | None) -> PromoCodeOut:
        # Codes are stored exactly as given; only blank values are rejected
        if not (code or "").strip() or not (description or "").strip():
            raise InvalidInput("Code and description are required")

        if self.overlay.get_promo_code_by_code(code) is not None:
            raise DuplicateCode()

        existing = self.store.get_promo_code_by_code(code)
        if existing is not None and not self.overlay.is_tombstoned(existing.id):
            raise DuplicateCode()

        # A tombstoned durable row still holds the unique code, so skip straight to the overlay
        if existing is None:
            try:
                promo = self.store.create_promo_code(code, description)
                logger.info("Promo code created id=%s code=%s", promo.id, code)
                return promo
            except StoreUnavailable as exc:
                logger.warning("Falling back to overlay: create promo code code=%s (%s)", code, exc)

        return self.overlay.create_promo_code(code, description)

    def delete(self, promo_code_id: int):
        if self.overlay.delete_promo_code(promo_code_id):
            return

        if self.overlay.is_tombstoned(promo_code_id):
            raise CodeNotFound()
        if self.store.get_promo_code_by_id(promo_code_id) is None:
            raise CodeNotFound()

        try:
            if not self.store.delete_promo_code(promo_code_id):
                raise CodeNotFound()
            logger.info("Promo code deleted id=%s", promo_code_id)
        except StoreUnavailable as exc:
            logger.warning("Falling back to overlay: delete promo code id=%s (%s)", promo_code_id, exc)
            self.overlay.tombstone(promo_code_id)

    def reset(self, entries: Sequence[tuple[str, str]] = DEFAULT_PROMO_CODES) -> list[PromoCodeOut]:
        """Replace the whole catalogue with ``entries``; tokens are kept."""
        self.overlay.clear_promo_codes()
        try:
            self.store.replace_promo_codes(entries)
        except StoreUnavailable as exc:
            logger.warning("Falling back to overlay: reset promo codes (%s)", exc)
            for promo in self.store.list_promo_codes():
                self.overlay.tombstone(promo.id)
            for code, description in entries:
                self.overlay.create_promo_code(code, description)
        return self.list()

    # Defined last: the name shadows the builtin inside the class body
    def list(self) -> list[PromoCodeOut]:
        hidden = self.overlay.tombstoned_ids()
        durable = [promo for promo in self.store.list_promo_codes() if promo.id not in hidden]
        merged = durable + self.overlay.list_promo_codes()
        return sorted(merged, key=lambda promo: (promo.code, promo.id))
