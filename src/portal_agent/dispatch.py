"""Deliver task results: email with attachment via Mailgun, and callback POST.

Both are one-shot calls. A failure raises ``TransportFailure`` without
retrying.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import aiohttp

from portal_agent.config.settings import Settings
from portal_agent.errors import ConfigurationError, TransportFailure
from portal_agent.models import ExecutionResult, OutputConfig

logger = logging.getLogger(__name__)


class OutputDispatcher:
    def __init__(
        self,
        *,
        mailgun_api_key: str = "",
        mailgun_domain: str = "",
        mailgun_base_url: str = "https://api.mailgun.net/v3",
        mail_from: str = "",
        timeout_s: float = 30.0,
    ) -> None:
        self.mailgun_api_key = mailgun_api_key
        self.mailgun_domain = mailgun_domain
        self.mailgun_base_url = mailgun_base_url.rstrip("/")
        self.mail_from = mail_from
        self.timeout_s = timeout_s

    @classmethod
    def from_settings(cls, settings: Settings) -> OutputDispatcher:
        return cls(
            mailgun_api_key=settings.mailgun_api_key,
            mailgun_domain=settings.mailgun_domain,
            mailgun_base_url=settings.mailgun_base_url,
            mail_from=settings.resolved_mail_from(),
            timeout_s=settings.dispatch_timeout_s,
        )

    @property
    def email_configured(self) -> bool:
        return bool(self.mailgun_api_key and self.mailgun_domain)

    async def deliver(self, result: ExecutionResult, output: OutputConfig) -> list[str]:
        """Send everything the output config asks for; returns the channels used."""
        delivered: list[str] = []
        if output.recipients and result.success and result.artifact_path:
            await self.send_email(
                recipients=list(output.recipients),
                subject=output.email_subject or f"Portal task result: {result.task_type}",
                text=_summary_text(result),
                attachment=Path(result.artifact_path),
            )
            delivered.append("email")
        if output.callback_url:
            await self.post_callback(output.callback_url, result)
            delivered.append("callback")
        return delivered

    async def send_email(
        self,
        *,
        recipients: list[str],
        subject: str,
        text: str,
        attachment: Path | None = None,
    ) -> None:
        if not self.email_configured:
            raise ConfigurationError("Mailgun API key and domain are required to send email")
        form = aiohttp.FormData()
        form.add_field("from", self.mail_from or f"noreply@{self.mailgun_domain}")
        for recipient in recipients:
            form.add_field("to", recipient)
        form.add_field("subject", subject)
        form.add_field("text", text)
        if attachment is not None:
            form.add_field(
                "attachment",
                attachment.read_bytes(),
                filename=attachment.name,
                content_type="application/octet-stream",
            )
        url = f"{self.mailgun_base_url}/{self.mailgun_domain}/messages"
        await self._post(url, data=form, auth=aiohttp.BasicAuth("api", self.mailgun_api_key))
        logger.info("event=email_sent recipients=%d attachment=%s", len(recipients), attachment)

    async def post_callback(self, url: str, result: ExecutionResult) -> None:
        await self._post(url, json=result.model_dump(mode="json"))
        logger.info("event=callback_posted url=%s success=%s", url, result.success)

    async def _post(self, url: str, **kwargs: Any) -> None:
        try:
            async with aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_s)
            ) as session:
                async with session.post(url, **kwargs) as response:
                    if response.status >= 400:
                        body = await response.text()
                        raise TransportFailure(
                            f"POST {url} failed with status {response.status}: {body[:300]}"
                        )
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise TransportFailure(f"POST {url} failed: {exc}") from exc


def _summary_text(result: ExecutionResult) -> str:
    summary = {
        "task_type": str(result.task_type),
        "success": result.success,
        "interaction_count": result.interaction_count,
        "duration_ms": result.duration_ms,
        "artifact": Path(result.artifact_path).name if result.artifact_path else None,
    }
    return "Task completed.\n\n" + json.dumps(summary, indent=2)
