import json
import logging
import re
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

import httpx

from .cancellation import CancelSignal, OperationTimeout, run_with_timeout, sleep_with_signal
from .config import AppSettings


logger = logging.getLogger("uvicorn.error")

ALLOWED_ROLES = {"system", "user", "assistant", "tool"}
TOKEN_PARAM_NEW = "max_completion_tokens"
TOKEN_PARAM_OLD = "max_tokens"
RETRY_MARGIN_S = 0.2
_RETRY_MS_RE = re.compile(r"(?:try again in|retry after)\s*([\d.]+)\s*ms", re.IGNORECASE)
_RETRY_S_RE = re.compile(r"(?:try again in|retry after)\s*([\d.]+)\s*s\b", re.IGNORECASE)
_UNSUPPORTED_PARAM_RE = re.compile(r"unsupported[_ ]parameter", re.IGNORECASE)


class LLMError(Exception):
    """Unrecoverable model-endpoint failure, tagged with the status and model involved."""

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        model: Optional[str] = None,
        kind: str = "http",
        detail: str = "",
    ):
        super().__init__(message)
        self.status = status
        self.model = model
        self.kind = kind
        self.detail = detail


def parse_retry_delay(detail: str, default_s: float = 3.0) -> float:
    """Seconds to wait after a 429, from hints like 'try again in 2.388s' or 'retry after 500ms'."""
    text = detail or ""
    ms_match = _RETRY_MS_RE.search(text)
    if ms_match:
        return float(ms_match.group(1)) / 1000.0 + RETRY_MARGIN_S
    s_match = _RETRY_S_RE.search(text)
    if s_match:
        return float(s_match.group(1)) + RETRY_MARGIN_S
    return default_s


class ModelRotation:
    """Priority-ordered model ring with a per-model sliding call window."""

    def __init__(
        self,
        models: List[str],
        rpm_limit: int = 3,
        window_s: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if not models:
            raise ValueError("model ring must contain at least one model")
        if rpm_limit < 1:
            raise ValueError("rpm_limit must be at least 1")
        if window_s <= 0:
            raise ValueError("window_s must be positive")
        self.models = list(models)
        self.rpm_limit = rpm_limit
        self.window_s = window_s
        self.clock = clock
        self.calls: Dict[str, Deque[float]] = {m: deque() for m in self.models}

    def _prune(self, model: str, now: float) -> Deque[float]:
        log = self.calls[model]
        while log and now - log[0] >= self.window_s:
            log.popleft()
        return log

    def remaining(self, model: str) -> int:
        log = self._prune(model, self.clock())
        return max(self.rpm_limit - len(log), 0)

    def next_model(self) -> str:
        """Pick and reserve a model; the call is recorded before the request goes out."""
        now = self.clock()
        for index, model in enumerate(self.models):
            log = self._prune(model, now)
            if len(log) < self.rpm_limit:
                log.append(now)
                logger.info(
                    "LLM picked model %s (priority #%s, %s/%s RPM used)", model, index, len(log), self.rpm_limit
                )
                return model
        best_model = self.models[0]
        best_wait = float("inf")
        for model in self.models:
            oldest = self.calls[model][0]
            wait = self.window_s - (now - oldest)
            if wait < best_wait:
                best_wait = wait
                best_model = model
        logger.warning("LLM all models at RPM limit, using %s (cooldown ~%.0fs)", best_model, max(best_wait, 0))
        self.calls[best_model].append(now)
        return best_model

    def snapshot(self) -> List[Dict[str, Any]]:
        return [{"model": m, "remaining": self.remaining(m)} for m in self.models]


class ChatClient:
    """Chat-completions client for OpenAI-compatible endpoints.

    The ``openai`` provider rotates across a model ring under a requests-per-minute
    budget and retries 429s. The ``ollama`` provider sends every request to one
    fixed model. Both negotiate ``max_tokens`` vs ``max_completion_tokens`` per
    model and enforce a hard per-request timeout.
    """

    def __init__(
        self,
        base_url: str,
        *,
        provider: str = "openai",
        api_key: Optional[str] = None,
        model: str = "gpt-5-nano",
        model_ring: Optional[List[str]] = None,
        temperature: float = 1.0,
        max_tokens: int = 10000,
        rpm_limit: int = 3,
        rate_window_s: float = 60.0,
        request_timeout_s: float = 45.0,
        max_429_retries: int = 3,
        default_429_delay_s: float = 3.0,
        sleep: Optional[Callable[[float, Optional[CancelSignal]], Awaitable[None]]] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.provider = provider
        self.api_key = api_key
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.request_timeout_s = request_timeout_s
        self.max_429_retries = max_429_retries
        self.default_429_delay_s = default_429_delay_s
        self.rotation = ModelRotation(model_ring or [model], rpm_limit=rpm_limit, window_s=rate_window_s)
        self.token_param_cache: Dict[str, str] = {}
        self.sleep = sleep or sleep_with_signal
        self.client = httpx.AsyncClient(timeout=None)

    @classmethod
    def from_settings(cls, settings: AppSettings) -> "ChatClient":
        return cls(
            settings.base_url,
            provider=settings.provider,
            api_key=settings.api_key,
            model=settings.model,
            model_ring=settings.model_ring,
            temperature=settings.temperature,
            max_tokens=settings.max_tokens,
            rpm_limit=settings.rpm_limit,
            rate_window_s=settings.rate_window_s,
            request_timeout_s=settings.request_timeout_s,
            max_429_retries=settings.max_429_retries,
            default_429_delay_s=settings.default_429_delay_s,
        )

    @property
    def is_local(self) -> bool:
        return self.provider == "ollama"

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if not self.is_local and self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _sanitize_messages(self, messages: Any) -> List[Dict[str, Any]]:
        if not isinstance(messages, list):
            return []
        sanitized: List[Dict[str, Any]] = []
        for msg in messages:
            if not isinstance(msg, dict) or msg.get("role") not in ALLOWED_ROLES:
                continue
            cleaned: Dict[str, Any] = {"role": msg["role"], "content": msg.get("content")}
            if msg.get("tool_calls"):
                cleaned["tool_calls"] = msg["tool_calls"]
            if msg["role"] == "tool":
                cleaned["tool_call_id"] = msg.get("tool_call_id")
            sanitized.append(cleaned)
        return sanitized

    def _build_body(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]],
        token_param: str,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": self.temperature,
            token_param: self.max_tokens,
        }
        if tools:
            body["tools"] = tools
            body["tool_choice"] = "auto"
        return body

    def _extract_error_detail(self, response: httpx.Response) -> str:
        try:
            data = response.json()
            if isinstance(data, dict):
                return json.dumps(data, ensure_ascii=True)
        except Exception:
            pass
        try:
            return response.text
        except Exception:
            return ""

    async def _post(self, body: Dict[str, Any], signal: Optional[CancelSignal]) -> httpx.Response:
        url = f"{self.base_url}/chat/completions"
        model = str(body.get("model") or "")
        try:
            return await run_with_timeout(
                self.client.post(url, json=body, headers=self._headers()),
                self.request_timeout_s,
                signal=signal,
            )
        except OperationTimeout:
            raise LLMError(
                f"LLM request timed out after {self.request_timeout_s:g}s",
                model=model,
                kind="timeout",
            )
        except httpx.RequestError as exc:
            raise LLMError(f"LLM request failed: {exc}", model=model, kind="network")

    async def _try_model(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]],
        signal: Optional[CancelSignal],
    ) -> httpx.Response:
        cached = self.token_param_cache.get(model)
        # Local servers speak the older shape; hosted models default to the newer one.
        token_param = cached or (TOKEN_PARAM_OLD if self.is_local else TOKEN_PARAM_NEW)
        response = await self._post(self._build_body(model, messages, tools, token_param), signal)
        if response.status_code == 400 and not cached:
            detail = self._extract_error_detail(response)
            if _UNSUPPORTED_PARAM_RE.search(detail):
                retry_param = TOKEN_PARAM_OLD if token_param == TOKEN_PARAM_NEW else TOKEN_PARAM_NEW
                logger.info("LLM %s: retrying with %s", model, retry_param)
                response = await self._post(self._build_body(model, messages, tools, retry_param), signal)
                if response.is_success:
                    self.token_param_cache[model] = retry_param
                return response
            return response
        if response.is_success and not cached:
            self.token_param_cache[model] = token_param
        return response

    def _parse_response(self, response: httpx.Response, model: str) -> Dict[str, Any]:
        try:
            data = response.json()
        except Exception:
            raise LLMError("LLM returned a non-JSON body", status=response.status_code, model=model, kind="invalid_response")
        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices:
            raise LLMError("LLM returned no choices", status=response.status_code, model=model, kind="invalid_response")
        message = dict(choices[0].get("message") or {})
        message["role"] = "assistant"
        message.setdefault("content", None)
        if not message.get("tool_calls"):
            message.pop("tool_calls", None)
            if not message.get("content"):
                fallback = message.get("reasoning") or message.get("reasoning_content")
                if fallback:
                    message["content"] = fallback
        message.pop("reasoning", None)
        message.pop("reasoning_content", None)
        logger.info(
            "LLM response model=%s content=%s tool_calls=%s finish=%s usage=%s",
            data.get("model") or model,
            bool(message.get("content")),
            len(message.get("tool_calls") or []),
            choices[0].get("finish_reason"),
            data.get("usage"),
        )
        return message

    async def complete(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        signal: Optional[CancelSignal] = None,
    ) -> Dict[str, Any]:
        """Send one chat completion and return the assistant message."""
        cleaned = self._sanitize_messages(messages)
        if not cleaned:
            raise ValueError("messages must include at least one entry")

        if self.is_local:
            model = self.model
            response = await self._try_model(model, cleaned, tools, signal)
            if not response.is_success:
                detail = self._extract_error_detail(response)
                raise LLMError(
                    f"LLM API error {response.status_code}: {detail}",
                    status=response.status_code,
                    model=model,
                    detail=detail,
                )
            return self._parse_response(response, model)

        attempt = 0
        while True:
            model = self.rotation.next_model()
            response = await self._try_model(model, cleaned, tools, signal)
            if response.is_success:
                return self._parse_response(response, model)
            detail = self._extract_error_detail(response)
            if response.status_code == 429 and attempt < self.max_429_retries:
                delay = parse_retry_delay(detail, self.default_429_delay_s)
                attempt += 1
                logger.warning(
                    "LLM 429 rate limit on %s (attempt %s/%s), retrying in %.2fs",
                    model,
                    attempt,
                    self.max_429_retries,
                    delay,
                )
                await self.sleep(delay, signal)
                continue
            raise LLMError(
                f"LLM API error {response.status_code} ({model}): {detail}",
                status=response.status_code,
                model=model,
                kind="rate_limit" if response.status_code == 429 else "http",
                detail=detail,
            )

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
