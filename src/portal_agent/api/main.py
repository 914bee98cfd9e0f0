"""FastAPI app for the one-time-code relay.

The relay receives inbound email events (e.g. Mailgun route webhooks),
extracts a code, and serves it to polling authenticators. Shared objects
live in ``app.state``:
- otp_store: the OTPStore instance backing every route.
- settings: resolved runtime settings.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager, suppress
from datetime import UTC, datetime
from typing import Any

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from portal_agent.config.settings import Settings, get_settings
from portal_agent.otp.extractor import extract_code
from portal_agent.otp.store import OTPStore

logger = logging.getLogger(__name__)


class WebhookPayload(BaseModel):
    """Inbound email event. Unknown relay fields are accepted and ignored."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    sender: str = Field(min_length=1)
    subject: str
    recipient: str | None = None
    body_plain: str | None = Field(default=None, alias="body-plain")
    stripped_text: str | None = Field(default=None, alias="stripped-text")
    body: str | None = None

    def text(self) -> str:
        return self.body_plain or self.stripped_text or self.body or ""


async def _cleanup_loop(store: OTPStore, interval_s: float) -> None:
    while True:
        await asyncio.sleep(interval_s)
        try:
            store.cleanup()
        except Exception:  # noqa: BLE001
            logger.exception("event=otp_cleanup_failed")


def create_app(
    *,
    store: OTPStore | None = None,
    settings_override: Settings | None = None,
) -> FastAPI:
    settings = settings_override or get_settings()
    otp_store = store or OTPStore(ttl_s=settings.otp_ttl_s)
    started_at = time.monotonic()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ticker = asyncio.create_task(_cleanup_loop(otp_store, settings.otp_cleanup_interval_s))
        logger.info(
            "event=relay_started cleanup_interval_s=%s ttl_s=%s",
            settings.otp_cleanup_interval_s,
            settings.otp_ttl_s,
        )
        try:
            yield
        finally:
            ticker.cancel()
            with suppress(asyncio.CancelledError):
                await ticker

    app = FastAPI(title=f"{settings.app_name} relay", lifespan=lifespan)
    app.state.otp_store = otp_store
    app.state.settings = settings

    def _store(request: Request) -> OTPStore:
        return request.app.state.otp_store

    # Aliases keep existing email-relay routes working.
    @app.post("/webhook")
    @app.post("/webhook/2fa")
    async def webhook(request: Request) -> JSONResponse:
        raw = await _read_payload(request)
        try:
            payload = WebhookPayload.model_validate(raw)
        except ValidationError as exc:
            logger.warning("event=webhook_rejected errors=%d", exc.error_count())
            return JSONResponse(
                status_code=400,
                content={
                    "success": False,
                    "message": "Invalid payload",
                    "errors": exc.errors(include_url=False, include_context=False),
                },
            )

        body = payload.text()
        code = extract_code(body, payload.subject)
        if code is None:
            logger.info("event=webhook_no_code sender=%s", payload.sender)
            return JSONResponse({"success": False, "message": "No 2FA code found in email"})

        code_id = _store(request).add_code(code, payload.sender, payload.subject, body)
        return JSONResponse(
            {"success": True, "message": "2FA code extracted and stored", "codeId": code_id}
        )

    @app.get("/code/latest")
    @app.get("/api/code/latest")
    def latest_code(
        request: Request,
        min_age_ms: float = Query(default=0, ge=0, alias="minAgeMs"),
        claim: bool = False,
    ) -> dict[str, Any]:
        otp_store_ = _store(request)
        entry = (
            otp_store_.claim_latest_code(min_age_ms)
            if claim
            else otp_store_.get_latest_code(min_age_ms)
        )
        if entry is None:
            return {"success": False, "message": "No valid codes found"}
        return {
            "success": True,
            "code": entry.code,
            "id": entry.id,
            "timestamp": _epoch_ms(entry.created_at),
            "sender": entry.sender,
            "subject": entry.subject,
        }

    @app.post("/code/{code_id}/use")
    @app.post("/api/code/{code_id}/use")
    def mark_used(code_id: str, request: Request) -> JSONResponse:
        if not _store(request).mark_used(code_id):
            return JSONResponse(
                status_code=404, content={"success": False, "message": "Code not found"}
            )
        return JSONResponse({"success": True})

    @app.get("/codes")
    @app.get("/api/codes")
    def list_codes(request: Request) -> dict[str, Any]:
        otp_store_ = _store(request)
        codes = [
            {
                "id": entry.id,
                "sender": entry.sender,
                "subject": entry.subject,
                "timestamp": _epoch_ms(entry.created_at),
                "expiresAt": _epoch_ms(entry.expires_at),
                "used": entry.used,
            }
            for entry in otp_store_.list_entries()
        ]
        return {"codes": codes, "stats": otp_store_.stats()}

    @app.get("/health")
    @app.get("/healthz")
    def health(request: Request) -> dict[str, Any]:
        return {
            "status": "ok",
            "service": settings.app_name,
            "timestamp": datetime.now(tz=UTC).isoformat(),
            "uptime_s": round(time.monotonic() - started_at, 3),
            "stats": _store(request).stats(),
        }

    return app


async def _read_payload(request: Request) -> dict[str, Any]:
    content_type = request.headers.get("content-type", "")
    if content_type.startswith(("application/x-www-form-urlencoded", "multipart/form-data")):
        form = await request.form()
        return {key: value for key, value in form.items() if isinstance(value, str)}
    try:
        data = await request.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


app = create_app()
