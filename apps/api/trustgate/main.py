from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.trustedhost import TrustedHostMiddleware

from trustgate.config import settings
from trustgate.cookies import clear_auth_cookies
from trustgate.flows import AuthFlowError
from trustgate.gate import two_factor_gate
from trustgate.routers.admin import router as admin_router
from trustgate.routers.auth import router as auth_router
from trustgate.routers.debug import router as debug_router
from trustgate.routers.magic_link import router as magic_link_router
from trustgate.routers.oauth import router as oauth_router
from trustgate.routers.two_factor import router as two_factor_router
from trustgate.security import CredentialDecryptError

logging.basicConfig(
  level=(settings.log_level or "INFO").upper(),
  format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
  title="Trustgate API",
  version=settings.app_version,
  docs_url="/docs" if settings.api_docs_enabled else None,
  redoc_url="/redoc" if settings.api_docs_enabled else None,
  openapi_url="/openapi.json" if settings.api_docs_enabled else None,
)


@app.exception_handler(AuthFlowError)
async def _auth_flow_error_handler(_, exc: AuthFlowError) -> JSONResponse:
  response = JSONResponse(status_code=exc.status_code, content={"error": exc.message, **exc.extra})
  if exc.clear_cookies:
    clear_auth_cookies(response)
  return response


@app.exception_handler(CredentialDecryptError)
async def _credential_decrypt_error_handler(request: Request, exc: CredentialDecryptError) -> JSONResponse:
  logger.error("credential decrypt failed on %s %s: %s", request.method, request.url.path, exc)
  return JSONResponse(status_code=500, content={"error": "Stored credential cannot be read"})


@app.exception_handler(SQLAlchemyError)
async def _database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
  logger.exception("database error on %s %s", request.method, request.url.path, exc_info=exc)
  return JSONResponse(status_code=500, content={"error": "Failed to process request"})


app.include_router(auth_router)
app.include_router(two_factor_router)
app.include_router(oauth_router)
app.include_router(magic_link_router)
app.include_router(admin_router)
app.include_router(debug_router)

app.middleware("http")(two_factor_gate)


@app.middleware("http")
async def _security_headers_middleware(request, call_next):
  response = await call_next(request)
  response.headers.setdefault("X-Content-Type-Options", "nosniff")
  response.headers.setdefault("X-Frame-Options", "DENY")
  response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
  response.headers.setdefault("Permissions-Policy", "geolocation=(), microphone=(), camera=()")
  return response


# Registered last so they run before the gate.
app.add_middleware(
  CORSMiddleware,
  allow_origins=settings.cors_origin_list(),
  allow_origin_regex=settings.cors_origin_regex,
  allow_credentials=True,
  allow_methods=["*"],
  allow_headers=["*"],
)
app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.trusted_host_list())


@app.get("/health")
async def health() -> dict:
  return {"ok": True}


@app.get("/version")
async def version() -> dict:
  return {"version": settings.app_version, "buildSha": settings.build_sha}


def _is_test_db() -> bool:
  db_name = settings.database_url.rsplit("/", 1)[-1]
  return "test" in db_name


@app.on_event("startup")
async def _startup() -> None:
  if _is_test_db():
    return
  if not settings.app_secret or settings.app_secret.strip().lower() in {"dev-secret-change-me", "replace_with_strong_random_secret"}:
    raise RuntimeError("APP_SECRET is required and must not be a placeholder")
  if not settings.fernet_key or settings.fernet_key.strip() in {"AAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA=", "REPLACE_WITH_FERNET_KEY"}:
    raise RuntimeError("FERNET_KEY is required and must not be a placeholder")
  logger.info("trustgate %s (%s) starting", settings.app_version, settings.build_sha)
