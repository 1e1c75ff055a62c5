# tokens.py
import logging
import secrets
from typing import Any

from errors import (
    AlreadyUsed,
    CodeNotFound,
    PromoServiceError,
    StoreReadOnly,
    StoreUnavailable,
    TokenCollision,
    TokenNotFound,
)
from registry import CodeRegistry
from schemas import IssuedTokenOut, PublicPromoCode, TokenOut, TokenValidationOut
from stores import PromoStore, token_prefix

logger = logging.getLogger(__name__)

# 16 random bytes -> 32 hex characters
TOKEN_BYTES = 16
MAX_ISSUE_ATTEMPTS = 5


def _new_token_value() -> str:
    return secrets.token_hex(TOKEN_BYTES)


def result_indicates_success(result: Any) -> bool:
    return isinstance(result, dict) and bool(result.get("success"))


class TokenIssuer:
    def __init__(self, registry: CodeRegistry):
        self.registry = registry
        self.store = registry.store
        self.overlay = registry.overlay

    def _exists(self, value: str) -> bool:
        return self.overlay.get_token(value) is not None or self.store.get_token(value) is not None

    def _write(self, owner: PromoStore, value: str, promo_code_id: int) -> TokenOut:
        # Overlay codes have no durable row to point at
        if owner is self.overlay:
            return self.overlay.create_token(value, promo_code_id)
        try:
            return self.store.create_token(value, promo_code_id)
        except StoreUnavailable as exc:
            logger.warning(
                "Falling back to overlay: issue token promo_code_id=%s (%s)", promo_code_id, exc
            )
            return self.overlay.create_token(value, promo_code_id)

    def issue(self, promo_code_id: int) -> IssuedTokenOut:
        promo, owner = self.registry.resolve(promo_code_id)

        for _ in range(MAX_ISSUE_ATTEMPTS):
            value = _new_token_value()
            if self._exists(value):
                continue
            try:
                token = self._write(owner, value, promo.id)
            except TokenCollision:
                continue
            logger.info("Token issued promo_code_id=%s token=%s", promo.id, token_prefix(token.token))
            return IssuedTokenOut(token=token.token, promo_code=promo.code)

        logger.error("Could not generate a unique token for promo_code_id=%s", promo.id)
        raise PromoServiceError("Failed to generate token")

    def list(self) -> list[TokenOut]:
        """Durable and overlay tokens, newest first."""
        codes = {promo.id: promo.code for promo in self.registry.list()}

        tokens = []
        for token in self.store.list_tokens_with_code():
            token = self.overlay.get_shadow(token.token) or token
            tokens.append(token.model_copy(update={"promo_code": codes.get(token.promo_code_id)}))
        for token in self.overlay.list_tokens_with_code():
            tokens.append(token.model_copy(update={"promo_code": codes.get(token.promo_code_id)}))

        return sorted(tokens, key=lambda token: token.created_at, reverse=True)


class TokenRedeemer:
    """Validation (read-only) and redemption (consuming) of tokens.

    Issued --[redeem with a successful result]--> Consumed. No other
    transition exists.
    """

    def __init__(self, registry: CodeRegistry):
        self.registry = registry
        self.store = registry.store
        self.overlay = registry.overlay

    def _lookup(self, token: str) -> tuple[TokenOut, PromoStore] | None:
        found = self.store.get_token(token)
        if found is not None:
            return self.overlay.get_shadow(token) or found, self.store

        found = self.overlay.get_token(token)
        if found is not None:
            return found, self.overlay
        return None

    def validate(self, token: str) -> TokenValidationOut:
        found = self._lookup(token)
        if found is None:
            return TokenValidationOut(is_valid=False)

        record, _ = found
        if record.used:
            raise AlreadyUsed()

        try:
            promo = self.registry.get(record.promo_code_id)
        except CodeNotFound:
            logger.warning(
                "Token bound to a deleted promo code token=%s promo_code_id=%s",
                token_prefix(token), record.promo_code_id,
            )
            return TokenValidationOut(is_valid=False)

        return TokenValidationOut(
            is_valid=True,
            promo_code=PublicPromoCode(code=promo.code, description=promo.description),
        )

    def redeem(self, token: str, result: Any) -> bool:
        """Consume ``token`` if ``result`` reports success.

        Returns False (token left unconsumed) for an unsuccessful result so
        the caller can retry.
        """
        found = self._lookup(token)
        if found is None:
            raise TokenNotFound()

        record, owner = found
        if record.used:
            raise AlreadyUsed()

        # Tokens of a deleted code are never redeemable
        self.registry.get(record.promo_code_id)

        if not result_indicates_success(result):
            logger.info("Redemption not applied, result unsuccessful token=%s", token_prefix(token))
            return False

        if owner is self.overlay:
            self.overlay.mark_token_used(token, result)
        else:
            # Shadow only when the store refused before writing; other failures propagate
            try:
                self.store.mark_token_used(token, result)
            except StoreReadOnly as exc:
                logger.warning("Falling back to overlay: redeem token=%s (%s)", token_prefix(token), exc)
                self.overlay.shadow_token_used(record, result)

        logger.info("Token redeemed token=%s promo_code_id=%s", token_prefix(token), record.promo_code_id)
        return True
