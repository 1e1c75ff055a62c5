# main.py
import logging
import os
import secrets
import uuid
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException
import uvicorn

from create_tables import init_db
from db import STORE_READ_ONLY, SessionLocal
from errors import AlreadyUsed, InvalidInput, NotFound, PromoServiceError, TokenNotFound
from observability import setup_structured_logging
from overlay import EphemeralOverlay
from registry import CodeRegistry
from stores import SqlRegistryStore, token_prefix
from tokens import TokenIssuer, TokenRedeemer

setup_structured_logging()
logger = logging.getLogger(__name__)

# Admin endpoints are closed entirely when this is not set
ADMIN_TOKEN = os.getenv("PROMO_ADMIN_TOKEN")


class Services:
    """The components one app instance works with; owns the overlay."""

    def __init__(self, registry: CodeRegistry, issuer: TokenIssuer, redeemer: TokenRedeemer):
        self.registry = registry
        self.issuer = issuer
        self.redeemer = redeemer


def build_services(
    session_factory=SessionLocal,
    read_only: bool = STORE_READ_ONLY,
    overlay: EphemeralOverlay | None = None,
) -> Services:
    store = SqlRegistryStore(session_factory, writable=not read_only)
    registry = CodeRegistry(store, overlay if overlay is not None else EphemeralOverlay())
    return Services(registry, TokenIssuer(registry), TokenRedeemer(registry))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Promo token service starting up (read_only=%s)", STORE_READ_ONLY)
    init_db(store=app.state.services.registry.store)
    yield
    logger.info("Promo token service shutting down")


app = FastAPI(title="Promo Token Service", version="1.0.0", lifespan=lifespan)
app.state.services = build_services()


def get_services(request: Request) -> Services:
    return request.app.state.services


def require_admin(x_admin_token: str | None = Header(None)):
    if not ADMIN_TOKEN:
        # If you forget to set it, block admin completely
        raise HTTPException(status_code=500, detail="admin_token_not_configured")
    if not x_admin_token or not secrets.compare_digest(x_admin_token.encode(), ADMIN_TOKEN.encode()):
        raise HTTPException(status_code=403, detail="forbidden")


# --------------------------------------------------------------------
# Middleware and error rendering: every failure is {success: false, message}
# --------------------------------------------------------------------

@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


def _failure(status_code: int, message: str, headers: dict | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "message": message},
        headers=headers,
    )


@app.exception_handler(PromoServiceError)
async def promo_error_handler(request: Request, exc: PromoServiceError):
    if exc.status_code >= 500:
        request_id = getattr(request.state, "request_id", "unknown")
        logger.error(
            "%s %s failed: %s", request.method, request.url.path, exc.message,
            exc_info=exc, extra={"request_id": request_id},
        )
    return _failure(exc.status_code, exc.message)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return _failure(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    if any(err.get("type") == "json_invalid" for err in exc.errors()):
        return _failure(400, "Invalid JSON format in request body")
    return _failure(400, "Invalid request body")


@app.exception_handler(Exception)
async def internal_error_handler(request: Request, exc: Exception):
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID", "unknown")
    logger.error(
        "Unhandled error on %s %s", request.method, request.url.path,
        exc_info=exc, extra={"request_id": request_id},
    )
    return _failure(500, "Internal server error", headers={"X-Request-ID": request_id})


# --------------------------------------------------------------------
# Request schemas
# --------------------------------------------------------------------

class PromoCodeCreateIn(BaseModel):
    code: str | None = None
    description: str | None = None


class TokenGenerateIn(BaseModel):
    promoCodeId: int | None = None


class TokenIn(BaseModel):
    token: str | None = None


class MarkUsedIn(BaseModel):
    token: str | None = None
    result: Any = None


def _require_token(body: TokenIn | MarkUsedIn) -> str:
    if not body.token:
        raise InvalidInput("Token is required")
    return body.token


# --------------------------------------------------------------------
# Health check
# --------------------------------------------------------------------

@app.get("/healthz")
async def healthz():
    return {"ok": True}


# --------------------------------------------------------------------
# Admin: promo codes
# --------------------------------------------------------------------

@app.get("/promo-codes", dependencies=[Depends(require_admin)])
def list_promo_codes(services: Services = Depends(get_services)):
    promo_codes = services.registry.list()
    return {"success": True, "promoCodes": [p.model_dump() for p in promo_codes]}


@app.post("/promo-codes", dependencies=[Depends(require_admin)])
def create_promo_code(body: PromoCodeCreateIn, services: Services = Depends(get_services)):
    promo = services.registry.create(body.code, body.description)
    return {
        "success": True,
        "message": "Promo code created successfully",
        "promoCode": promo.model_dump(),
    }


@app.delete("/promo-codes", dependencies=[Depends(require_admin)])
def delete_promo_code(
    id: str | None = Query(None, description="promo code id"),
    services: Services = Depends(get_services),
):
    if not id:
        raise InvalidInput("Promo code ID is required")
    try:
        promo_code_id = int(id)
    except ValueError:
        raise InvalidInput("Promo code ID must be an integer")

    services.registry.delete(promo_code_id)
    return {"success": True, "message": "Promo code deleted successfully"}


@app.post("/promo-codes/reset", dependencies=[Depends(require_admin)])
def reset_promo_codes(services: Services = Depends(get_services)):
    promo_codes = services.registry.reset()
    return {
        "success": True,
        "message": "Promo codes reset successfully",
        "promoCodes": [p.model_dump() for p in promo_codes],
    }


# --------------------------------------------------------------------
# Admin: tokens
# --------------------------------------------------------------------

@app.get("/tokens", dependencies=[Depends(require_admin)])
def list_tokens(services: Services = Depends(get_services)):
    tokens = services.issuer.list()
    return {"success": True, "tokens": [t.model_dump(mode="json") for t in tokens]}


@app.post("/tokens/generate", dependencies=[Depends(require_admin)])
def generate_token(body: TokenGenerateIn, services: Services = Depends(get_services)):
    if body.promoCodeId is None:
        raise InvalidInput("Promo code ID is required")

    issued = services.issuer.issue(body.promoCodeId)
    return {"success": True, "token": issued.token, "promoCode": issued.promo_code}


@app.post("/tokens/verify", dependencies=[Depends(require_admin)])
def verify_token(body: TokenIn, services: Services = Depends(get_services)):
    validation = services.redeemer.validate(_require_token(body))
    if not validation.is_valid:
        raise TokenNotFound()
    return {"success": True, "promoCode": validation.promo_code.code}


@app.post("/tokens/mark-used", dependencies=[Depends(require_admin)])
def mark_token_used(body: MarkUsedIn, services: Services = Depends(get_services)):
    token = _require_token(body)
    try:
        services.redeemer.redeem(token, body.result)
    except (NotFound, AlreadyUsed) as exc:
        # Fire-and-forget for the caller; the outcome is only logged
        logger.warning("mark-used ignored for token=%s: %s", token_prefix(token), exc.message)
    return {"success": True}


# --------------------------------------------------------------------
# Public: token validation (called by untrusted clients, no admin token)
# --------------------------------------------------------------------

@app.post("/tokens/validate")
@app.post("/public/validate-token")
def validate_token(body: TokenIn, services: Services = Depends(get_services)):
    validation = services.redeemer.validate(_require_token(body))

    response = {"success": True, "isValid": validation.is_valid}
    if validation.promo_code is not None:
        response["promoCode"] = validation.promo_code.model_dump()
    return response


def run():
    uvicorn.run(
        "main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
    )


if __name__ == "__main__":
    run()
