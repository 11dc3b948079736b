"""Notification channel implementations."""

from __future__ import annotations

import json
from typing import Any, Mapping

import httpx
import structlog
from jinja2 import Template

from stack_alarms.config import GLOBAL_RULE, AlarmsConfig, ConfigError
from stack_alarms.notifications.messages import compile_template

logger = structlog.get_logger(__name__)

TELEGRAM_MAX_MESSAGE_LEN = 3900


class NotificationTarget:
    """A named delivery channel.

    Subclasses implement ``_send``; ``deliver`` is the entry point used by the
    dispatcher. Targets own their retry policy, the base class has none.
    """

    kind = "base"
    required_keys: tuple[str, ...] = ()

    def __init__(self, name: str, config: Mapping[str, Any], client: httpx.AsyncClient | None = None) -> None:
        missing = [key for key in self.required_keys if not config.get(key)]
        if missing:
            raise ConfigError(f"targets.{name} ({self.kind}) is missing required keys: {', '.join(missing)}")
        self.name = name
        self.config = dict(config)
        self.client = client
        self.timeout = float(config.get("timeout", 15.0))
        template_source = config.get("template")
        self.template: Template | None = (
            compile_template(str(template_source), target_name=name) if template_source else None
        )

    async def deliver(self, message: str) -> bool:
        return await self._send(message)

    async def _send(self, message: str) -> bool:
        raise NotImplementedError

    def _http(self) -> httpx.AsyncClient:
        if self.client is None:
            raise RuntimeError(f"target {self.name} needs an HTTP client")
        return self.client

    def __repr__(self) -> str:
        return f"<{type(self).__name__} name={self.name!r}>"


def split_telegram_message(text: str, *, max_len: int = TELEGRAM_MAX_MESSAGE_LEN) -> list[str]:
    s = (text or "").strip()
    if not s:
        return [""]

    max_len = max(1, int(max_len))
    parts: list[str] = []
    while s:
        if len(s) <= max_len:
            parts.append(s)
            break
        cut = s.rfind("\n", 0, max_len + 1)
        if cut < max_len * 0.6:
            cut = max_len
        parts.append(s[:cut].rstrip())
        s = s[cut:].lstrip()
    return parts


class TelegramTarget(NotificationTarget):
    kind = "telegram"
    required_keys = ("bot_token", "chat_id")

    async def _send(self, message: str) -> bool:
        token = str(self.config["bot_token"])
        url = f"https://api.telegram.org/bot{token}/sendMessage"
        ok_all = True
        for part in split_telegram_message(message):
            payload = {"chat_id": self.config["chat_id"], "text": part}
            try:
                resp = await self._http().post(url, json=payload, timeout=self.timeout)
                data = resp.json()
            except (httpx.HTTPError, ValueError) as exc:
                # The token is part of the URL and may show up in the error text.
                logger.warning(
                    "Telegram delivery failed",
                    target=self.name,
                    error=f"{type(exc).__name__}: {exc}".replace(token, "<redacted>"),
                )
                return False
            ok = bool(isinstance(data, dict) and data.get("ok"))
            if not ok:
                logger.warning("Telegram rejected message", target=self.name, response=redact_telegram_response(data))
            ok_all = ok_all and ok
        return ok_all


def redact_telegram_response(data: Any) -> str:
    if not isinstance(data, dict):
        return json.dumps({"ok": False})
    safe: dict[str, Any] = {"ok": data.get("ok")}
    if isinstance(data.get("result"), dict):
        safe["result"] = {"message_id": data["result"].get("message_id")}
    if data.get("description"):
        safe["description"] = data.get("description")
    return json.dumps(safe, ensure_ascii=False)


class SlackTarget(NotificationTarget):
    kind = "slack"
    required_keys = ("webhook_url",)

    async def _send(self, message: str) -> bool:
        payload: dict[str, Any] = {"text": message}
        for key in ("channel", "username", "icon_emoji"):
            if self.config.get(key):
                payload[key] = self.config[key]
        resp = await self._http().post(str(self.config["webhook_url"]), json=payload, timeout=self.timeout)
        if resp.is_success:
            return True
        logger.warning("Slack webhook rejected message", target=self.name, status_code=resp.status_code)
        return False


class WebhookTarget(NotificationTarget):
    kind = "webhook"
    required_keys = ("url",)

    async def _send(self, message: str) -> bool:
        method = str(self.config.get("method") or "POST").upper()
        headers = self.config.get("headers") or {}
        resp = await self._http().request(
            method,
            str(self.config["url"]),
            json={"text": message},
            headers={str(k): str(v) for k, v in dict(headers).items()},
            timeout=self.timeout,
        )
        if resp.is_success:
            return True
        logger.warning("Webhook rejected message", target=self.name, status_code=resp.status_code)
        return False


class LogTarget(NotificationTarget):
    kind = "log"

    async def _send(self, message: str) -> bool:
        logger.warning("Notification", target=self.name, message=message)
        return True


TARGET_KINDS: dict[str, type[NotificationTarget]] = {
    cls.kind: cls for cls in (TelegramTarget, SlackTarget, WebhookTarget, LogTarget)
}


def build_target(
    name: str, config: Mapping[str, Any], client: httpx.AsyncClient | None = None
) -> NotificationTarget:
    """Construct the target for ``name``; the kind defaults to the target name."""
    kind = str(config.get("kind") or name)
    target_cls = TARGET_KINDS.get(kind)
    if target_cls is None:
        known = ", ".join(sorted(TARGET_KINDS))
        raise ConfigError(f"targets.{name}: unknown target kind {kind!r} (known: {known})")
    return target_cls(name, config, client)


def validate_targets(config: AlarmsConfig) -> None:
    """Build every target each notification rule resolves to, raising ConfigError on the first bad one."""
    rules = [GLOBAL_RULE, *(key for key in config.notifications if key != GLOBAL_RULE)]
    for rule in rules:
        for name, target_cfg in config.resolve(rule).targets.items():
            build_target(name, target_cfg)
