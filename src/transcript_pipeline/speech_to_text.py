from __future__ import annotations

import logging
import mimetypes
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import httpx
import openai

from transcript_pipeline.cancellation import CancelToken, call_interruptibly
from transcript_pipeline.errors import (
    NotAvailableError,
    PermanentError,
    TransientError,
    classify_status,
    error_for_class,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"
_MISSING_KEY_MESSAGE = "OpenAI API key is not configured (set OPENAI_API_KEY)"


@runtime_checkable
class SpeechToTextBackend(Protocol):
    name: str

    def transcribe_file(self, path: Path, *, language: str | None, cancel: CancelToken) -> str: ...


class OpenAISdkBackend:
    """High-level speech-to-text through the ``openai`` SDK."""

    name = "openai_sdk"

    def __init__(
        self,
        *,
        api_key: str | None,
        model: str = "whisper-1",
        temperature: float = 0.1,
        base_url: str | None = None,
        timeout_seconds: float = 300.0,
        http_client: httpx.Client | None = None,
        client: Any | None = None,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._temperature = temperature
        self._base_url = base_url
        self._timeout_seconds = timeout_seconds
        self._http_client = http_client
        self._client = client

    def _get_client(self) -> Any:
        if self._client is not None:
            return self._client
        if not self._api_key:
            raise PermanentError(_MISSING_KEY_MESSAGE)
        self._client = openai.OpenAI(
            api_key=self._api_key,
            base_url=self._base_url,
            timeout=self._timeout_seconds,
            max_retries=0,
            http_client=self._http_client,
        )
        return self._client

    def transcribe_file(self, path: Path, *, language: str | None, cancel: CancelToken) -> str:
        client = self._get_client()
        extra: dict[str, Any] = {"language": language} if language else {}

        def _call() -> Any:
            with path.open("rb") as handle:
                return client.audio.transcriptions.create(
                    model=self._model,
                    file=handle,
                    response_format="text",
                    temperature=self._temperature,
                    **extra,
                )

        try:
            response = call_interruptibly(_call, cancel=cancel, name=f"{self.name}-upload")
        except (openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError) as exc:
            raise TransientError(f"OpenAI SDK: {exc}") from exc
        except (openai.AuthenticationError, openai.PermissionDeniedError) as exc:
            raise PermanentError(f"OpenAI SDK rejected the API key: {exc}") from exc
        except openai.APIStatusError as exc:
            raise error_for_class(classify_status(exc.status_code), f"OpenAI SDK: {exc}") from exc
        except openai.OpenAIError as exc:
            raise PermanentError(f"OpenAI SDK: {exc}") from exc

        text = response if isinstance(response, str) else getattr(response, "text", "")
        return _require_text(text, source=self.name)


class DirectHttpBackend:
    """Multipart upload to ``/audio/transcriptions`` over a caller-supplied httpx client."""

    name = "direct_http"

    def __init__(
        self,
        *,
        api_key: str | None,
        client: httpx.Client,
        model: str = "whisper-1",
        temperature: float = 0.1,
        base_url: str = DEFAULT_BASE_URL,
        user_agent: str | None = None,
    ) -> None:
        self._api_key = api_key
        self._client = client
        self._model = model
        self._temperature = temperature
        self._base_url = base_url.rstrip("/")
        self._user_agent = user_agent

    def transcribe_file(self, path: Path, *, language: str | None, cancel: CancelToken) -> str:
        if not self._api_key:
            raise PermanentError(_MISSING_KEY_MESSAGE)
        url = f"{self._base_url}/audio/transcriptions"
        headers = {"Authorization": f"Bearer {self._api_key}", "Connection": "close"}
        if self._user_agent:
            headers["User-Agent"] = self._user_agent
        data = {
            "model": self._model,
            "response_format": "text",
            "temperature": str(self._temperature),
        }
        if language:
            data["language"] = language
        content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"

        def _call() -> httpx.Response:
            with path.open("rb") as handle:
                return self._client.post(
                    url,
                    headers=headers,
                    data=data,
                    files={"file": (path.name, handle, content_type)},
                )

        try:
            response = call_interruptibly(_call, cancel=cancel, name=f"{self.name}-upload")
        except httpx.TimeoutException as exc:
            raise TransientError(f"POST {url} timed out") from exc
        except httpx.TransportError as exc:
            raise TransientError(f"POST {url} failed: {exc}") from exc

        if response.status_code >= 400:
            raise _status_error(response)
        return _require_text(response.text, source=self.name)


def _status_error(response: httpx.Response) -> Exception:
    status = response.status_code
    detail = _error_detail(response)
    if status in {401, 403}:
        return PermanentError(f"speech-to-text API rejected the API key (HTTP {status}): {detail}")
    if status == 413:
        return PermanentError(f"audio file too large for speech-to-text API (HTTP 413): {detail}")
    return error_for_class(classify_status(status), f"speech-to-text API returned HTTP {status}: {detail}")


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
    return response.text[:200]


def _require_text(text: str | None, *, source: str) -> str:
    value = (text or "").strip()
    if not value:
        raise NotAvailableError(f"{source} returned an empty transcription")
    return value
