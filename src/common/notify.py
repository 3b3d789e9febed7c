from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional, Protocol, Union

import httpx


logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://api.telegram.org"


class Notifier(Protocol):
    """User-facing channel for configuration and crypto problems."""

    def alert(self, message: str, *, title: str = "Alert") -> None: ...

    def confirm(self, message: str, *, title: str = "Confirm") -> bool: ...


class NotifyError(RuntimeError):
    """Delivering a notification failed."""


class LogNotifier:
    """
    Headless notifier: alerts go to the log and confirmations use a fixed answer.

    With the default `auto_confirm=False`, operations that need the user's
    consent (e.g. overwriting a larger cloud copy) are skipped.
    """

    def __init__(self, *, auto_confirm: bool = False) -> None:
        self._auto_confirm = auto_confirm

    def alert(self, message: str, *, title: str = "Alert") -> None:
        logger.warning("%s: %s", title, message)

    def confirm(self, message: str, *, title: str = "Confirm") -> bool:
        logger.warning("%s: %s (answered %s)", title, message, "yes" if self._auto_confirm else "no")
        return self._auto_confirm


class TelegramNotifier:
    """
    Sends alerts to one Telegram chat through the Bot API `sendMessage` method.

    Notes
    - Retries transport errors, 429 and 5xx with backoff, honoring `retry_after`.
    - Delivery failures are logged, never raised: an undeliverable alert must not
      mask the error that caused it.
    - Telegram cannot answer synchronously, so `confirm` sends the question and
      returns `auto_confirm`.
    """

    def __init__(
        self,
        token: str,
        chat_id: Union[int, str],
        *,
        api_base: str = DEFAULT_API_BASE,
        timeout: float = 15.0,
        auto_confirm: bool = False,
        client: Optional[httpx.Client] = None,
        sleep=time.sleep,
    ) -> None:
        if not token:
            raise ValueError("token is required")
        self._chat_id = chat_id
        self._auto_confirm = auto_confirm
        self._owns_client = client is None
        base_url = f"{api_base.rstrip('/')}/bot{token}"
        self._client = client or httpx.Client(base_url=base_url, timeout=timeout)
        self._sleep = sleep

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "TelegramNotifier":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --------------- Notifier API ---------------
    def alert(self, message: str, *, title: str = "Alert") -> None:
        try:
            self.send_message(f"{title}\n\n{message}")
        except NotifyError as exc:
            logger.error("Failed to deliver alert %r: %s", title, exc)

    def confirm(self, message: str, *, title: str = "Confirm") -> bool:
        answer = "proceeding" if self._auto_confirm else "skipped"
        self.alert(f"{message}\n\n(Operation {answer} automatically.)", title=title)
        return self._auto_confirm

    def send_message(self, text: str) -> Dict[str, Any]:
        data = self._request("sendMessage", {"chat_id": self._chat_id, "text": text})
        if not isinstance(data, dict) or "ok" not in data:
            raise NotifyError("Malformed response from Telegram Bot API")
        if data.get("ok") is True and isinstance(data.get("result"), dict):
            return data["result"]  # type: ignore[return-value]
        desc = data.get("description") or "Telegram API error"
        raise NotifyError(f"{desc} (code={data.get('error_code')})")

    # --------------- Internal ---------------
    def _request(self, method: str, json_body: Dict[str, Any]) -> Dict[str, Any]:
        attempt = 0
        backoff = 0.5
        last_exc: Optional[Exception] = None
        while attempt < 4:
            try:
                resp = self._client.post(f"/{method}", json=json_body)
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                last_exc = exc
            else:
                if resp.status_code == 200:
                    try:
                        return resp.json()
                    except ValueError as exc:
                        raise NotifyError("Failed to parse JSON from Telegram API") from exc

                if resp.status_code in (429, 500, 502, 503, 504):
                    retry_after = _retry_after(resp)
                    self._sleep(min(retry_after if retry_after is not None else backoff, 10.0))
                    backoff = min(backoff * 2, 8.0)
                    attempt += 1
                    last_exc = NotifyError(f"HTTP {resp.status_code} from Telegram")
                    continue

                raise NotifyError(f"HTTP {resp.status_code} from Telegram: {resp.text[:200]}")

            attempt += 1
            self._sleep(backoff)
            backoff = min(backoff * 2, 8.0)

        raise NotifyError("Failed request after retries") from last_exc


def _retry_after(resp: httpx.Response) -> Optional[float]:
    # 429 bodies look like { ok:false, error_code:429, parameters: { retry_after: N } }
    try:
        body = resp.json()
    except ValueError:
        return None
    params = body.get("parameters") if isinstance(body, dict) else None
    if isinstance(params, dict) and isinstance(params.get("retry_after"), (int, float)):
        return float(params["retry_after"])
    return None


__all__ = ["Notifier", "NotifyError", "LogNotifier", "TelegramNotifier"]
