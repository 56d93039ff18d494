from __future__ import annotations

import http.client
import json
import logging
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any, Callable

from ..config import LLMConfig
from ..errors import LLMError
from ..retry import RetryPolicy

HARM_CATEGORIES = [
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
]
SAFETY_THRESHOLD = "BLOCK_MEDIUM_AND_ABOVE"


@dataclass(frozen=True)
class LLMResponse:
    text: str
    model: str
    provider: str
    latency_ms: int


@dataclass(frozen=True)
class LLMAttempt:
    provider: str
    model: str
    input_chars: int
    output_chars: int
    latency_ms: int
    ok: bool
    error: str | None


class LLMClient:
    """Text generation over HTTP.

    ``google`` calls Gemini ``generateContent``; ``openai_compatible`` calls
    ``/chat/completions``. Transient failures (timeouts, network errors,
    HTTP 429 and 5xx) are retried with the configured backoff.
    """

    def __init__(
        self,
        config: LLMConfig,
        *,
        retry_policy: RetryPolicy | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=config.max_attempts,
            base_delay_seconds=config.backoff_seconds,
        )
        self.logger = logger or logging.getLogger("contentgen.llm")

    @property
    def provider(self) -> str:
        return self.config.provider

    @property
    def model(self) -> str:
        return self.config.model

    def generate(
        self,
        prompt: str,
        *,
        on_attempt: Callable[[LLMAttempt], None] | None = None,
    ) -> LLMResponse:
        def _attempt() -> LLMResponse:
            started = time.monotonic()
            try:
                text = self._call_provider(prompt)
            except LLMError as exc:
                self._report(on_attempt, prompt, "", started, str(exc))
                raise
            latency_ms = self._report(on_attempt, prompt, text, started, None)
            return LLMResponse(
                text=text,
                model=self.model,
                provider=self.provider,
                latency_ms=latency_ms,
            )

        return self.retry_policy.run(_attempt, logger=self.logger, name="llm_generate")

    def _report(
        self,
        on_attempt: Callable[[LLMAttempt], None] | None,
        prompt: str,
        text: str,
        started: float,
        error: str | None,
    ) -> int:
        latency_ms = int((time.monotonic() - started) * 1000)
        if on_attempt is not None:
            on_attempt(
                LLMAttempt(
                    provider=self.provider,
                    model=self.model,
                    input_chars=len(prompt),
                    output_chars=len(text),
                    latency_ms=latency_ms,
                    ok=error is None,
                    error=error,
                )
            )
        return latency_ms

    def _call_provider(self, prompt: str) -> str:
        base_url = self.config.base_url or _default_base_url(self.provider)
        if self.provider == "google":
            if not self.config.api_key:
                raise LLMError("missing_api_key", "set CG_LLM_API_KEY or GEMINI_API_KEY")
            path = _join_url(
                base_url,
                f"/models/{urllib.parse.quote(self.model)}:generateContent",
            )
            path = _append_key(path, self.config.api_key)
            payload = {
                "contents": [{"role": "user", "parts": [{"text": prompt}]}],
                "generationConfig": {
                    "temperature": self.config.temperature,
                    "topK": self.config.top_k,
                    "topP": self.config.top_p,
                    "maxOutputTokens": self.config.max_output_tokens,
                },
                "safetySettings": [
                    {"category": category, "threshold": SAFETY_THRESHOLD}
                    for category in HARM_CATEGORIES
                ],
            }
            response = _http_request("POST", path, {}, payload, self.config.timeout_seconds)
            return _read_google(response)
        if self.provider == "openai_compatible":
            path = _join_url(base_url, "/chat/completions")
            payload = {
                "model": self.model,
                "messages": [{"role": "user", "content": prompt}],
                "temperature": self.config.temperature,
                "top_p": self.config.top_p,
                "max_tokens": self.config.max_output_tokens,
            }
            headers = _auth_headers(self.config.api_key)
            response = _http_request("POST", path, headers, payload, self.config.timeout_seconds)
            return _read_openai(response)
        raise LLMError("unsupported_provider_type", self.provider)


def _http_request(
    method: str,
    url: str,
    headers: dict[str, str],
    payload: dict[str, Any] | None,
    timeout: int,
) -> dict[str, Any]:
    data = json.dumps(payload).encode("utf-8") if payload is not None else None
    request = urllib.request.Request(url, data=data, method=method)
    request.add_header("Content-Type", "application/json")
    for key, value in headers.items():
        request.add_header(key, value)
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            body_bytes = response.read()
    except urllib.error.HTTPError as exc:
        body = exc.read().decode("utf-8", errors="ignore")
        raise LLMError(
            "http_error",
            f"{exc.code}: {body[:500]}",
            retryable=exc.code == 429 or exc.code >= 500,
            status=exc.code,
        ) from exc
    except TimeoutError as exc:
        raise LLMError("timeout", f"no response after {timeout}s", retryable=True) from exc
    except urllib.error.URLError as exc:
        if isinstance(exc.reason, TimeoutError):
            raise LLMError("timeout", f"no response after {timeout}s", retryable=True) from exc
        raise LLMError("network_error", str(exc.reason), retryable=True) from exc
    except (http.client.HTTPException, OSError) as exc:
        raise LLMError("network_error", str(exc) or type(exc).__name__, retryable=True) from exc
    try:
        raw = body_bytes.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise LLMError("invalid_response", f"body is not utf-8: {exc}") from exc
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise LLMError("invalid_response", raw[:500]) from exc


def _read_openai(response: dict[str, Any]) -> str:
    choices = response.get("choices") or []
    if not choices:
        raise LLMError("openai_missing_choices")
    return (choices[0].get("message") or {}).get("content") or ""


def _read_google(response: dict[str, Any]) -> str:
    candidates = response.get("candidates") or []
    if not candidates:
        feedback = response.get("promptFeedback") or {}
        if feedback.get("blockReason"):
            raise LLMError("prompt_blocked", str(feedback["blockReason"]))
        raise LLMError("google_missing_candidates")
    candidate = candidates[0]
    parts = (candidate.get("content") or {}).get("parts") or []
    if not parts:
        reason = candidate.get("finishReason")
        raise LLMError("google_missing_parts", str(reason) if reason else None)
    return "".join(str(part.get("text") or "") for part in parts)


def _auth_headers(api_key: str | None) -> dict[str, str]:
    if not api_key:
        return {}
    return {"Authorization": f"Bearer {api_key}"}


def _default_base_url(provider_type: str) -> str:
    if provider_type == "openai_compatible":
        return "https://api.openai.com/v1"
    if provider_type == "google":
        return "https://generativelanguage.googleapis.com/v1beta"
    return ""


def _append_key(url: str, api_key: str | None) -> str:
    if not api_key:
        return url
    parsed = urllib.parse.urlsplit(url)
    query = urllib.parse.parse_qsl(parsed.query, keep_blank_values=True)
    query.append(("key", api_key))
    return urllib.parse.urlunsplit(
        (parsed.scheme, parsed.netloc, parsed.path, urllib.parse.urlencode(query), parsed.fragment)
    )


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path
