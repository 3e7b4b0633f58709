from __future__ import annotations

import smtplib
import socket
import time
from datetime import datetime, timezone
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Any

import requests

from ..errors import ErrorCategory, NodeExecutionError
from ..expressions import render_template
from .base import Node, NodeCategory, NodeExecutionContext, NodeExecutionResult

_HTTP_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]
_BODYLESS_METHODS = {"GET", "HEAD", "OPTIONS", "DELETE"}


def _status_category(status: int) -> ErrorCategory:
    if status == 429:
        return ErrorCategory.RATE_LIMIT
    if status in (401, 403):
        return ErrorCategory.AUTHENTICATION
    if status >= 500 or status == 408:
        return ErrorCategory.NETWORK
    return ErrorCategory.VALIDATION


class HttpRequestNode(Node):
    id = "httpRequest"
    name = "HTTP Request"
    category = NodeCategory.ACTION
    icon = "http"
    description = "Make HTTP requests to external APIs and services"
    tags = ("http", "api", "request", "rest", "web")
    properties_schema = {
        "url": {"type": "string", "required": True, "placeholder": "https://api.example.com/endpoint"},
        "method": {"type": "select", "options": _HTTP_METHODS, "default": "GET", "required": True},
        "headers": {"type": "object", "default": {}},
        "queryParameters": {"type": "object", "default": {}},
        "body": {"type": "object"},
        "sendInputData": {"type": "boolean", "default": True, "description": "Merge input data into the request body"},
        "timeout": {"type": "number", "default": 30, "min": 1, "max": 300},
        "followRedirects": {"type": "boolean", "default": True},
        "ignoreSSLErrors": {"type": "boolean", "default": False},
        "failOnHttpError": {"type": "boolean", "default": False},
        "authentication": {"type": "select", "options": ["none", "basic", "bearer", "header"], "default": "none"},
        "credential": {"type": "credential", "description": "Credential reference used for authentication"},
    }
    outputs = {
        "main": {
            "type": "object",
            "description": "HTTP response data",
            "properties": {
                "status": {"type": "number"},
                "statusText": {"type": "string"},
                "headers": {"type": "object"},
                "body": {"type": "any"},
                "responseTime": {"type": "number"},
            },
        },
        "error": {"type": "object", "description": "Responses with a 4xx or 5xx status"},
    }
    max_execution_time_seconds = 300
    supports_async = True
    priority = 5

    def validate(self, properties: dict[str, Any]) -> bool:
        if not super().validate(properties):
            return False
        url = str(properties.get("url", ""))
        if not url.startswith(("http://", "https://")):
            return False
        timeout = properties.get("timeout", 30)
        return isinstance(timeout, (int, float)) and 1 <= timeout <= 300

    def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        url = context.get_property("url")
        method = str(context.get_property("method", "GET")).upper()
        headers = {str(key): str(value) for key, value in context.get_property("headers", {}).items()}
        params = dict(context.get_property("queryParameters", {}))
        auth = self._apply_authentication(context, headers)

        request_kwargs: dict[str, Any] = {
            "headers": headers,
            "params": params,
            "timeout": context.get_property("timeout", 30),
            "allow_redirects": context.get_property("followRedirects", True),
            "verify": not context.get_property("ignoreSSLErrors", False),
            "auth": auth,
        }
        if method not in _BODYLESS_METHODS:
            body = dict(context.get_property("body", {}))
            if context.get_property("sendInputData", True):
                body = {**context.input_data, **body}
            if body:
                request_kwargs["json"] = body

        context.log(f"Sending {method} request", url=url)
        started = time.perf_counter()
        try:
            response = requests.request(method, url, **request_kwargs)
        except requests.RequestException as exc:
            context.log("HTTP request failed", level="error", url=url, error=str(exc))
            return NodeExecutionResult.from_exception(exc)
        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)

        try:
            body = response.json()
        except ValueError:
            body = response.text

        envelope = {
            "status": response.status_code,
            "statusText": response.reason,
            "headers": dict(response.headers),
            "body": body,
            "responseTime": elapsed_ms,
            "url": url,
            "method": method,
        }
        context.log("HTTP request completed", status=response.status_code, response_time_ms=elapsed_ms)

        if response.status_code >= 400:
            if context.get_property("failOnHttpError", False):
                return NodeExecutionResult.failure(
                    f"HTTP {response.status_code} {response.reason} from {url}",
                    code=f"http_{response.status_code}",
                    category=_status_category(response.status_code),
                    metadata={"response": envelope},
                )
            return NodeExecutionResult.single(envelope, port="error")
        return NodeExecutionResult.single(envelope)

    @staticmethod
    def _apply_authentication(context: NodeExecutionContext, headers: dict[str, str]) -> tuple[str, str] | None:
        auth_type = context.get_property("authentication", "none")
        if auth_type == "none":
            return None
        creds = context.credential(context.get_property("credential", ""))
        if auth_type == "basic":
            return creds.get("username", ""), creds.get("password", "")
        if auth_type == "bearer":
            headers["Authorization"] = f"Bearer {creds.get('token', '')}"
        elif auth_type == "header":
            headers[creds.get("name", "Authorization")] = creds.get("value", "")
        return None


class EmailNode(Node):
    id = "email"
    name = "Email"
    category = NodeCategory.ACTION
    icon = "email"
    description = "Send emails via SMTP"
    tags = ("email", "smtp", "notification", "communication")
    properties_schema = {
        "to": {"type": "string", "required": True, "placeholder": "recipient@example.com"},
        "cc": {"type": "string"},
        "bcc": {"type": "string"},
        "subject": {"type": "string", "required": True},
        "body": {"type": "text", "required": True},
        "bodyType": {"type": "select", "options": ["text", "html"], "default": "text"},
        "fromEmail": {"type": "string"},
        "fromName": {"type": "string"},
        "replyTo": {"type": "string"},
        "credential": {"type": "credential", "required": True, "description": "SMTP credential reference"},
    }
    outputs = {
        "main": {
            "type": "object",
            "description": "Email sending result",
            "properties": {
                "messageId": {"type": "string"},
                "to": {"type": "array"},
                "subject": {"type": "string"},
                "sentAt": {"type": "string"},
            },
        }
    }
    max_execution_time_seconds = 60
    supports_async = True
    priority = 3
    critical = False

    # Input fields that may override the configured message.
    _OVERRIDABLE = ("to", "cc", "bcc", "subject", "body")

    def validate(self, properties: dict[str, Any]) -> bool:
        if not super().validate(properties):
            return False
        for field_name in ("to", "cc", "bcc"):
            for address in _split_addresses(properties.get(field_name)):
                if "{{" not in address and "@" not in address:
                    return False
        return True

    def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        fields = {key: context.get_property(key, "") for key in self._OVERRIDABLE}
        for key in self._OVERRIDABLE:
            value = context.input_data.get(key)
            if isinstance(value, str) and value:
                fields[key] = value
        fields = {key: render_template(str(value), context.input_data) for key, value in fields.items()}
        recipients = _split_addresses(fields["to"])
        if not recipients:
            return NodeExecutionResult.failure(
                "Email node requires at least one recipient", code="missing_recipient", category=ErrorCategory.VALIDATION
            )

        smtp = context.credential(context.get_property("credential", ""))
        host = smtp.get("host")
        if not host:
            raise NodeExecutionError(
                "SMTP credential is missing 'host'", code="smtp_not_configured", category=ErrorCategory.CONFIGURATION
            )

        sender = context.get_property("fromEmail") or smtp.get("from_email") or smtp.get("username", "")
        message = EmailMessage()
        message["Subject"] = fields["subject"]
        message["From"] = formataddr((context.get_property("fromName", ""), sender))
        message["To"] = ", ".join(recipients)
        if fields["cc"]:
            message["Cc"] = ", ".join(_split_addresses(fields["cc"]))
        if context.get_property("replyTo"):
            message["Reply-To"] = context.get_property("replyTo")
        message_id = make_msgid()
        message["Message-ID"] = message_id
        subtype = "html" if context.get_property("bodyType", "text") == "html" else "plain"
        message.set_content(fields["body"], subtype=subtype)

        all_recipients = recipients + _split_addresses(fields["cc"]) + _split_addresses(fields["bcc"])
        try:
            with smtplib.SMTP(host, int(smtp.get("port") or 587), timeout=30) as client:
                if smtp.get("use_tls", "true").lower() in ("1", "true", "yes"):
                    client.starttls()
                if smtp.get("username"):
                    client.login(smtp["username"], smtp.get("password", ""))
                client.send_message(message, from_addr=sender, to_addrs=all_recipients)
        except smtplib.SMTPAuthenticationError as exc:
            return NodeExecutionResult.failure(
                f"SMTP authentication failed: {exc}", code="smtp_auth", category=ErrorCategory.AUTHENTICATION
            )
        except smtplib.SMTPRecipientsRefused as exc:
            return NodeExecutionResult.failure(
                f"Recipients refused: {', '.join(exc.recipients)}", code="smtp_recipients", category=ErrorCategory.VALIDATION
            )
        except socket.timeout as exc:
            return NodeExecutionResult.failure(f"SMTP timeout: {exc}", code="smtp_timeout", category=ErrorCategory.TIMEOUT)
        except (smtplib.SMTPException, OSError) as exc:
            return NodeExecutionResult.failure(f"SMTP error: {exc}", code="smtp_error", category=ErrorCategory.NETWORK)

        context.log("Email sent", to=recipients, subject=fields["subject"])
        return NodeExecutionResult.single(
            {
                "messageId": message_id,
                "to": recipients,
                "subject": fields["subject"],
                "sentAt": datetime.now(timezone.utc).isoformat(),
            }
        )


def _split_addresses(value: Any) -> list[str]:
    if not value:
        return []
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if str(item).strip()]
    return [part.strip() for part in str(value).split(",") if part.strip()]


class SlackNode(Node):
    id = "slack"
    name = "Slack"
    category = NodeCategory.ACTION
    icon = "slack"
    description = "Send messages and interact with Slack"
    tags = ("slack", "chat", "notification", "messaging", "communication")
    properties_schema = {
        "action": {
            "type": "select",
            "options": ["sendMessage", "sendBlock", "updateMessage", "deleteMessage"],
            "default": "sendMessage",
            "required": True,
        },
        "channel": {"type": "string", "placeholder": "#general"},
        "text": {"type": "text"},
        "blocks": {"type": "array"},
        "messageTs": {"type": "string", "description": "Timestamp of the message to update or delete"},
        "username": {"type": "string"},
        "iconEmoji": {"type": "string"},
        "webhookUrl": {"type": "string"},
        "credential": {"type": "credential", "description": "Credential holding 'token' or 'webhookUrl'"},
    }
    outputs = {
        "main": {
            "type": "object",
            "properties": {
                "ok": {"type": "boolean"},
                "channel": {"type": "string"},
                "ts": {"type": "string"},
                "message": {"type": "object"},
            },
        }
    }
    max_execution_time_seconds = 30
    supports_async = True
    priority = 3
    critical = False

    api_base = "https://slack.com/api"

    def validate(self, properties: dict[str, Any]) -> bool:
        if not super().validate(properties):
            return False
        action = properties.get("action", "sendMessage")
        if action in ("updateMessage", "deleteMessage"):
            return bool(properties.get("channel")) and bool(properties.get("messageTs"))
        if action == "sendBlock":
            return bool(properties.get("blocks")) and bool(properties.get("channel"))
        return bool(properties.get("text"))

    def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        creds = context.credential(context.get_property("credential")) if context.get_property("credential") else {}
        action = context.get_property("action", "sendMessage")
        text = render_template(str(context.get_property("text", "")), context.input_data)
        webhook_url = context.get_property("webhookUrl") or creds.get("webhookUrl")

        if action == "sendMessage" and webhook_url:
            payload: dict[str, Any] = {"text": text}
            for prop, key in (("channel", "channel"), ("username", "username"), ("iconEmoji", "icon_emoji")):
                if context.get_property(prop):
                    payload[key] = context.get_property(prop)
            response = requests.post(webhook_url, json=payload, timeout=30)
            if response.status_code >= 400:
                return NodeExecutionResult.failure(
                    f"Slack webhook returned {response.status_code}: {response.text}",
                    code="slack_webhook",
                    category=_status_category(response.status_code),
                )
            context.log("Slack message sent via webhook")
            return NodeExecutionResult.single({"ok": True, "channel": payload.get("channel"), "ts": None, "message": payload})

        token = creds.get("token")
        if not token:
            raise NodeExecutionError(
                "Slack action requires a bot token or webhook URL",
                code="slack_not_configured",
                category=ErrorCategory.CONFIGURATION,
            )

        channel = context.get_property("channel")
        if action == "deleteMessage":
            method, payload = "chat.delete", {"channel": channel, "ts": context.get_property("messageTs")}
        elif action == "updateMessage":
            method, payload = "chat.update", {"channel": channel, "ts": context.get_property("messageTs"), "text": text}
        else:
            method, payload = "chat.postMessage", {"channel": channel, "text": text}
            if action == "sendBlock":
                payload["blocks"] = context.get_property("blocks")
        if context.get_property("blocks") and action == "updateMessage":
            payload["blocks"] = context.get_property("blocks")

        response = requests.post(
            f"{self.api_base}/{method}",
            json=payload,
            headers={"Authorization": f"Bearer {token}"},
            timeout=30,
        )
        if response.status_code == 429:
            return NodeExecutionResult.failure("Slack rate limit exceeded", code="slack_ratelimited", category=ErrorCategory.RATE_LIMIT)
        if response.status_code >= 400:
            return NodeExecutionResult.failure(
                f"Slack API returned {response.status_code}: {response.text}",
                code="slack_http_error",
                category=_status_category(response.status_code),
            )
        data = response.json()
        if not data.get("ok"):
            error = data.get("error", "unknown_error")
            category = {
                "ratelimited": ErrorCategory.RATE_LIMIT,
                "invalid_auth": ErrorCategory.AUTHENTICATION,
                "not_authed": ErrorCategory.AUTHENTICATION,
                "token_revoked": ErrorCategory.AUTHENTICATION,
            }.get(error, ErrorCategory.VALIDATION)
            return NodeExecutionResult.failure(f"Slack API error: {error}", code=f"slack_{error}", category=category)

        context.log("Slack API call succeeded", method=method, channel=data.get("channel", channel))
        return NodeExecutionResult.single(
            {
                "ok": True,
                "channel": data.get("channel", channel),
                "ts": data.get("ts"),
                "message": data.get("message", payload),
            }
        )
