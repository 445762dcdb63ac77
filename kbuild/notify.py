"""Telegram delivery of build results.

Uploads the flashable zip to a chat via the Bot API ``sendDocument`` method.
Missing credentials skip the upload without touching the network.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import TYPE_CHECKING

import httpx

from kbuild.types import NotifyStatus, PackageResult

if TYPE_CHECKING:
    from kbuild.config import BuildConfig, Settings

logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"

# Timeout for uploads (seconds)
UPLOAD_TIMEOUT = 3600

# Characters that must be backslash-escaped in MarkdownV2 text
MARKDOWN_V2_SPECIAL = re.compile(r"([_*\[\]()~`>#+\-=|{}.!\\])")


class NotificationError(Exception):
    """Raised when the upload to Telegram fails."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        code: str = "notification_error",
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code


def escape_markdown(text: str) -> str:
    """Escape text for Telegram MarkdownV2 parse mode."""
    return MARKDOWN_V2_SPECIAL.sub(r"\\\1", text)


def format_caption(target: str, md5: str, elapsed_seconds: float) -> str:
    """Format the document caption.

    Args:
        target: Device codename.
        md5: Zip checksum.
        elapsed_seconds: Build duration.

    Returns:
        Multi-line caption text, escaped for MarkdownV2.
    """
    minutes = int(elapsed_seconds // 60)
    return (
        f"Device: {escape_markdown(target)}\n"
        f"MD5: {escape_markdown(md5)}\n\n"
        f"Build success in {minutes} minutes"
    )


def send_document(
    client: httpx.Client,
    token: str,
    chat_id: str,
    file_path: Path,
    caption: str,
    base_url: str = TELEGRAM_API_BASE,
    timeout: float = UPLOAD_TIMEOUT,
) -> dict[str, object]:
    """Upload a file to a Telegram chat.

    Args:
        client: HTTPX client instance.
        token: Bot token.
        chat_id: Destination chat.
        file_path: File to upload.
        caption: Caption text.
        base_url: Bot API base URL.
        timeout: Request timeout in seconds.

    Returns:
        Decoded JSON response body.

    Raises:
        NotificationError: If the request fails or the API rejects it.
    """
    url = f"{base_url}/bot{token}/sendDocument"
    data = {
        "chat_id": chat_id,
        "caption": caption,
        "parse_mode": "markdownv2",
        "disable_web_page_preview": "true",
    }

    logger.info("Uploading %s to Telegram...", file_path.name)
    try:
        with file_path.open("rb") as f:
            response = client.post(
                url,
                data=data,
                files={"document": (file_path.name, f, "application/zip")},
                timeout=timeout,
            )
        response.raise_for_status()
        body = response.json()
    except httpx.HTTPStatusError as e:
        raise NotificationError(
            f"Telegram API error: {e.response.status_code} {e.response.reason_phrase}",
            status_code=e.response.status_code,
            code="http_error",
        ) from e
    except httpx.TimeoutException as e:
        raise NotificationError("Timeout uploading to Telegram", code="timeout") from e
    except httpx.RequestError as e:
        # The token is part of the URL; keep it out of the message
        raise NotificationError(
            f"Network error uploading to Telegram: {type(e).__name__}",
            code="network_error",
        ) from e
    except ValueError as e:
        raise NotificationError(
            "Telegram returned a non-JSON response",
            code="invalid_response",
        ) from e

    if not body.get("ok", False):
        raise NotificationError(
            f"Telegram rejected the upload: {body.get('description', 'unknown error')}",
            code="api_error",
        )

    logger.info("Upload completed!")
    return body


def notify_build(
    settings: Settings,
    config: BuildConfig,
    result: PackageResult,
    client: httpx.Client,
) -> NotifyStatus:
    """Send the packaged zip to Telegram if credentials are configured.

    Args:
        settings: Application settings (credentials, timeout).
        config: Resolved build configuration.
        result: Packaging result.
        client: HTTPX client instance.

    Returns:
        SENT after a successful upload, SKIPPED without credentials.

    Raises:
        NotificationError: If the upload fails.
    """
    token = settings.tg_token.get_secret_value() if settings.tg_token else ""
    chat_id = settings.tg_chat_id or ""
    if not token or not chat_id:
        logger.info("Telegram credentials missing. Skipping upload.")
        return NotifyStatus.SKIPPED

    caption = format_caption(config.target, result.md5, result.elapsed_seconds)
    send_document(
        client,
        token,
        chat_id,
        result.zip_path,
        caption,
        timeout=settings.http_timeout,
    )
    return NotifyStatus.SENT


__all__ = [
    "TELEGRAM_API_BASE",
    "NotificationError",
    "escape_markdown",
    "format_caption",
    "notify_build",
    "send_document",
]
