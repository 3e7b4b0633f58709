from __future__ import annotations

import base64
import binascii
import imaplib
import logging
import re
import socket
from datetime import datetime, timedelta, timezone
from email import policy as email_policy
from email.message import EmailMessage
from email.parser import BytesParser
from email.utils import getaddresses
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from ..errors import ErrorCategory, NodeExecutionError
from ..models import ExecutionMode
from .base import Node, NodeCategory, NodeExecutionContext, NodeExecutionResult

logger = logging.getLogger(__name__)

_WEBHOOK_PATH = re.compile(r"^/[a-zA-Z0-9\-_/]*$")
_INTERVAL_UNITS = {"seconds": 1, "minutes": 60, "hours": 3600, "days": 86400}


class ManualTriggerNode(Node):
    id = "manualTrigger"
    name = "Manual Trigger"
    category = NodeCategory.TRIGGER
    icon = "play"
    description = "Starts a workflow with the provided input data."
    tags = ("manual", "trigger", "start")
    inputs = {}
    outputs = {"main": {"type": "object", "description": "The input data, unchanged"}}
    max_execution_time_seconds = 30
    priority = 10
    trigger_modes = (ExecutionMode.MANUAL, ExecutionMode.API, ExecutionMode.ERROR)

    def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        return NodeExecutionResult.single(dict(context.input_data))


class WebhookTriggerNode(Node):
    id = "webhookTrigger"
    name = "Webhook"
    category = NodeCategory.TRIGGER
    icon = "webhook"
    description = "Trigger workflow execution via HTTP webhooks"
    tags = ("webhook", "trigger", "http", "api")
    properties_schema = {
        "path": {"type": "string", "placeholder": "/webhook/my-endpoint", "required": False},
        "method": {"type": "select", "options": ["GET", "POST", "PUT", "PATCH"], "default": "POST", "required": True},
        "authentication": {"type": "select", "options": ["none", "basic", "bearer", "api_key"], "default": "none"},
        "basicAuth": {"type": "object", "properties": {"username": {"type": "string"}, "password": {"type": "string"}}},
        "bearerToken": {"type": "string"},
        "apiKey": {
            "type": "object",
            "properties": {"headerName": {"type": "string", "default": "X-API-Key"}, "key": {"type": "string"}},
        },
        "responseMode": {"type": "select", "options": ["immediate", "delayed"], "default": "immediate"},
        "responseCode": {"type": "number", "default": 200, "min": 200, "max": 599},
        "responseBody": {"type": "object", "description": "Custom response body"},
    }
    inputs = {
        "main": {
            "type": "object",
            "description": "Webhook request envelope",
            "properties": {
                "headers": {"type": "object"},
                "body": {"type": "object"},
                "query": {"type": "object"},
                "method": {"type": "string"},
                "url": {"type": "string"},
            },
        }
    }
    outputs = {
        "main": {
            "type": "object",
            "description": "Webhook data for workflow processing",
            "properties": {
                "headers": {"type": "object"},
                "body": {"type": "object"},
                "query": {"type": "object"},
                "method": {"type": "string"},
                "url": {"type": "string"},
                "timestamp": {"type": "string"},
                "webhookId": {"type": "string"},
            },
        }
    }
    max_execution_time_seconds = 30
    priority = 10
    trigger_modes = (ExecutionMode.WEBHOOK,)

    def validate(self, properties: dict[str, Any]) -> bool:
        if not super().validate(properties):
            return False
        path = properties.get("path")
        if path and not _WEBHOOK_PATH.match(str(path)):
            return False
        code = properties.get("responseCode", 200)
        if not isinstance(code, int) or not 200 <= code <= 599:
            return False
        auth = properties.get("authentication", "none")
        if auth == "basic" and not (properties.get("basicAuth") or {}).get("username"):
            return False
        if auth == "bearer" and not properties.get("bearerToken"):
            return False
        if auth == "api_key" and not (properties.get("apiKey") or {}).get("key"):
            return False
        return True

    def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        request = context.input_data
        is_envelope = "body" in request or "headers" in request
        headers = {str(key).lower(): value for key, value in (request.get("headers") or {}).items()} if is_envelope else {}

        if not self.authenticate(context.properties, headers):
            context.log("Webhook authentication failed", level="warning")
            return NodeExecutionResult.failure(
                "Webhook authentication failed",
                code="webhook_unauthorized",
                category=ErrorCategory.AUTHENTICATION,
                metadata={"response": {"code": 401, "body": {"error": "Unauthorized"}}},
            )

        payload = {
            "headers": headers,
            "body": request.get("body", {}) if is_envelope else dict(request),
            "query": request.get("query", {}) if is_envelope else {},
            "method": request.get("method", context.get_property("method", "POST")) if is_envelope else context.get_property("method", "POST"),
            "url": request.get("url", context.get_property("path", "")) if is_envelope else context.get_property("path", ""),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "webhookId": context.get_property("path") or context.workflow_id,
        }
        context.log("Webhook received", method=payload["method"], url=payload["url"])
        response = {
            "code": context.get_property("responseCode", 200),
            "body": context.get_property("responseBody", {"message": "Workflow executed successfully"}),
            "mode": context.get_property("responseMode", "immediate"),
        }
        return NodeExecutionResult.single(payload, metadata={"response": response})

    @staticmethod
    def authenticate(properties: dict[str, Any], headers: dict[str, Any]) -> bool:
        auth = properties.get("authentication", "none")
        authorization = str(headers.get("authorization", ""))
        if auth == "basic":
            expected = properties.get("basicAuth") or {}
            if not authorization.startswith("Basic "):
                return False
            try:
                decoded = base64.b64decode(authorization[6:], validate=True).decode("utf-8")
            except (binascii.Error, UnicodeDecodeError):
                return False
            username, _, password = decoded.partition(":")
            return username == expected.get("username", "") and password == expected.get("password", "")
        if auth == "bearer":
            return authorization == f"Bearer {properties.get('bearerToken', '')}"
        if auth == "api_key":
            api_key = properties.get("apiKey") or {}
            header_name = str(api_key.get("headerName", "X-API-Key")).lower()
            return str(headers.get(header_name, "")) == str(api_key.get("key", ""))
        return True


class ScheduleTriggerNode(Node):
    id = "scheduleTrigger"
    name = "Schedule Trigger"
    category = NodeCategory.TRIGGER
    icon = "schedule"
    description = "Trigger workflow execution on a schedule (cron-like)"
    tags = ("schedule", "trigger", "cron", "interval", "time", "automation")
    properties_schema = {
        "scheduleType": {"type": "select", "options": ["interval", "cron", "specific"], "default": "interval", "required": True},
        "interval": {"type": "number", "default": 60, "min": 1, "max": 86400},
        "intervalUnit": {"type": "select", "options": list(_INTERVAL_UNITS), "default": "minutes"},
        "cronExpression": {"type": "string", "placeholder": "*/5 * * * *"},
        "specificTime": {"type": "datetime"},
        "timezone": {"type": "string", "default": "UTC"},
        "enabled": {"type": "boolean", "default": True},
        "maxExecutions": {"type": "number", "default": 0, "min": 0},
    }
    inputs = {}
    outputs = {
        "main": {
            "type": "object",
            "description": "Scheduled trigger data",
            "properties": {
                "timestamp": {"type": "string"},
                "scheduledTime": {"type": "string"},
                "executionCount": {"type": "number"},
                "nextExecution": {"type": "string"},
            },
        }
    }
    max_execution_time_seconds = 30
    priority = 10
    trigger_modes = (ExecutionMode.SCHEDULE,)

    def validate(self, properties: dict[str, Any]) -> bool:
        if not super().validate(properties):
            return False
        schedule_type = properties.get("scheduleType", "interval")
        if schedule_type == "interval":
            interval = properties.get("interval", 60)
            return isinstance(interval, (int, float)) and 1 <= interval <= 86400
        if schedule_type == "cron":
            expression = properties.get("cronExpression", "")
            return bool(expression) and croniter.is_valid(expression)
        if schedule_type == "specific":
            return _parse_datetime(properties.get("specificTime")) is not None
        return False

    def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        tz_name = context.get_property("timezone", "UTC")
        try:
            tz = ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            return NodeExecutionResult.failure(
                f"Unknown timezone '{tz_name}'", code="invalid_timezone", category=ErrorCategory.CONFIGURATION
            )
        now = datetime.now(tz)
        schedule_type = context.get_property("scheduleType", "interval")
        trigger = {
            "timestamp": now.isoformat(),
            "scheduledTime": context.input_data.get("scheduledTime", now.isoformat()),
            "executionCount": context.input_data.get("executionCount", 1),
            "scheduleType": schedule_type,
            "timezone": tz_name,
        }

        if schedule_type == "interval":
            interval = context.get_property("interval", 60)
            unit = context.get_property("intervalUnit", "minutes")
            trigger["interval"] = interval
            trigger["intervalUnit"] = unit
            trigger["nextExecution"] = (now + timedelta(seconds=interval * _INTERVAL_UNITS.get(unit, 60))).isoformat()
        elif schedule_type == "cron":
            expression = context.get_property("cronExpression")
            trigger["cronExpression"] = expression
            trigger["nextExecution"] = croniter(expression, now).get_next(datetime).isoformat()
        else:
            trigger["scheduledTime"] = context.get_property("specificTime")
            trigger["nextExecution"] = None

        context.log("Schedule trigger executed", schedule_type=schedule_type, timestamp=trigger["timestamp"])
        return NodeExecutionResult.single(trigger)


def _parse_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class EmailTriggerNode(Node):
    """Polls an IMAP mailbox and starts the workflow with the messages found."""

    id = "emailTrigger"
    name = "Email Trigger"
    category = NodeCategory.TRIGGER
    icon = "email"
    description = "Trigger workflow when emails are received or sent"
    tags = ("email", "trigger", "imap", "mail", "notification", "automation")
    properties_schema = {
        "triggerType": {"type": "select", "options": ["received", "sent", "both"], "default": "received", "required": True},
        "emailAddress": {"type": "string", "required": True, "placeholder": "workflow@yourdomain.com"},
        "subjectFilter": {"type": "string", "description": "Only messages whose subject contains this text"},
        "senderFilter": {"type": "string", "placeholder": "@company.com"},
        "pollInterval": {"type": "number", "default": 60, "min": 30, "max": 3600},
        "maxEmails": {"type": "number", "default": 10, "min": 1, "max": 100},
        "markAsRead": {"type": "boolean", "default": True},
        "includeAttachments": {"type": "boolean", "default": False},
        "deleteAfterProcessing": {"type": "boolean", "default": False},
        "mailbox": {"type": "string", "default": "INBOX"},
        "sentMailbox": {"type": "string", "default": "Sent"},
        "searchCriteria": {"type": "string", "default": "UNSEEN", "description": "Base IMAP search key"},
        "imapHost": {"type": "string", "placeholder": "imap.gmail.com", "description": "Overrides the credential host"},
        "imapPort": {"type": "number", "description": "Defaults to 993 for ssl, 143 otherwise"},
        "imapEncryption": {"type": "select", "options": ["ssl", "tls", "none"], "default": "ssl"},
        "credential": {"type": "credential", "required": True, "description": "IMAP credential with username and password"},
    }
    inputs = {}
    outputs = {
        "main": {
            "type": "object",
            "description": "Messages that triggered the workflow",
            "properties": {
                "emails": {"type": "array"},
                "count": {"type": "number"},
                "emailAddress": {"type": "string"},
                "triggerType": {"type": "string"},
                "checkedAt": {"type": "string"},
            },
        }
    }
    max_execution_time_seconds = 60
    priority = 9
    trigger_modes = (ExecutionMode.SCHEDULE,)

    def validate(self, properties: dict[str, Any]) -> bool:
        if not super().validate(properties):
            return False
        if "@" not in str(properties.get("emailAddress", "")):
            return False
        port = properties.get("imapPort")
        if port is not None and not (isinstance(port, int) and 1 <= port <= 65535):
            return False
        limit = properties.get("maxEmails", 10)
        return isinstance(limit, int) and 1 <= limit <= 100

    def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        creds = context.credential(context.get_property("credential", ""))
        host = context.get_property("imapHost") or creds.get("host")
        if not host or not creds.get("username"):
            raise NodeExecutionError(
                "IMAP credential needs 'host' and 'username'", code="imap_not_configured", category=ErrorCategory.CONFIGURATION
            )
        encryption = context.get_property("imapEncryption", "ssl")
        port = int(context.get_property("imapPort") or creds.get("port") or (993 if encryption == "ssl" else 143))
        trigger_type = context.get_property("triggerType", "received")
        address = context.get_property("emailAddress")
        limit = int(context.get_property("maxEmails", 10))

        searches = []
        if trigger_type in ("received", "both"):
            searches.append((context.get_property("mailbox", "INBOX"), "TO", "received"))
        if trigger_type in ("sent", "both"):
            searches.append((context.get_property("sentMailbox", "Sent"), "FROM", "sent"))

        emails: list[dict[str, Any]] = []
        try:
            client = imaplib.IMAP4_SSL(host, port, timeout=30) if encryption == "ssl" else imaplib.IMAP4(host, port, timeout=30)
        except socket.timeout as exc:
            return NodeExecutionResult.failure(f"IMAP timeout: {exc}", code="imap_timeout", category=ErrorCategory.TIMEOUT)
        except OSError as exc:
            return NodeExecutionResult.failure(f"IMAP connection failed: {exc}", code="imap_connect", category=ErrorCategory.NETWORK)
        try:
            if encryption == "tls":
                client.starttls()
            try:
                client.login(creds["username"], creds.get("password", ""))
            except imaplib.IMAP4.error as exc:
                return NodeExecutionResult.failure(
                    f"IMAP authentication failed: {exc}", code="imap_auth", category=ErrorCategory.AUTHENTICATION
                )
            for mailbox, address_key, direction in searches:
                if len(emails) >= limit:
                    break
                criteria = [address_key, _imap_quote(address)]
                emails.extend(self._collect(client, context, mailbox, criteria, direction, limit - len(emails)))
        except socket.timeout as exc:
            return NodeExecutionResult.failure(f"IMAP timeout: {exc}", code="imap_timeout", category=ErrorCategory.TIMEOUT)
        except imaplib.IMAP4.error as exc:
            return NodeExecutionResult.failure(f"IMAP error: {exc}", code="imap_error", category=ErrorCategory.NETWORK)
        finally:
            try:
                client.logout()
            except (imaplib.IMAP4.error, OSError):
                logger.debug("IMAP logout failed", exc_info=True)

        checked_at = datetime.now(timezone.utc).isoformat()
        if not emails:
            context.log("No new emails", email_address=address, trigger_type=trigger_type)
            return NodeExecutionResult.ok({}, metadata={"count": 0, "checkedAt": checked_at})
        context.log("Email trigger executed", email_address=address, trigger_type=trigger_type, count=len(emails))
        return NodeExecutionResult.single(
            {
                "emails": emails,
                "count": len(emails),
                "emailAddress": address,
                "triggerType": trigger_type,
                "checkedAt": checked_at,
            }
        )

    def _collect(
        self,
        client: imaplib.IMAP4,
        context: NodeExecutionContext,
        mailbox: str,
        address_criteria: list[str],
        direction: str,
        limit: int,
    ) -> list[dict[str, Any]]:
        mark_as_read = bool(context.get_property("markAsRead", True))
        delete = bool(context.get_property("deleteAfterProcessing", False))
        status, _ = client.select(mailbox, readonly=not (mark_as_read or delete))
        if status != "OK":
            raise NodeExecutionError(f"Mailbox '{mailbox}' not found", code="imap_mailbox", category=ErrorCategory.CONFIGURATION)

        criteria = [context.get_property("searchCriteria", "UNSEEN"), *address_criteria]
        if context.get_property("subjectFilter"):
            criteria += ["SUBJECT", _imap_quote(context.get_property("subjectFilter"))]
        if context.get_property("senderFilter"):
            criteria += ["FROM", _imap_quote(context.get_property("senderFilter"))]
        status, data = client.search(None, *criteria)
        if status != "OK":
            raise imaplib.IMAP4.error(f"Search in '{mailbox}' failed")

        emails = []
        for message_number in data[0].split()[:limit]:
            status, parts = client.fetch(message_number, "(BODY.PEEK[])")
            if status != "OK" or not parts or not isinstance(parts[0], tuple):
                continue
            message = BytesParser(policy=email_policy.default).parsebytes(parts[0][1])
            emails.append(_email_payload(message, mailbox, direction, bool(context.get_property("includeAttachments", False))))
            if mark_as_read:
                client.store(message_number, "+FLAGS", "\\Seen")
            if delete:
                client.store(message_number, "+FLAGS", "\\Deleted")
        if delete and emails:
            client.expunge()
        return emails


def _imap_quote(value: str) -> str:
    return '"' + str(value).replace("\\", "\\\\").replace('"', '\\"') + '"'


def _email_payload(message: EmailMessage, mailbox: str, direction: str, include_attachments: bool) -> dict[str, Any]:
    plain = message.get_body(preferencelist=("plain",))
    html = message.get_body(preferencelist=("html",))
    attachments = []
    for part in message.iter_attachments():
        content = part.get_payload(decode=True) or b""
        attachment = {"filename": part.get_filename(), "size": len(content), "mimeType": part.get_content_type()}
        if include_attachments:
            attachment["content"] = base64.b64encode(content).decode("ascii")
        attachments.append(attachment)
    return {
        "messageId": str(message.get("Message-ID", "")),
        "subject": str(message.get("Subject", "")),
        "from": str(message.get("From", "")),
        "to": [address for _, address in getaddresses(message.get_all("To", []))],
        "cc": [address for _, address in getaddresses(message.get_all("Cc", []))],
        "bcc": [address for _, address in getaddresses(message.get_all("Bcc", []))],
        "date": str(message.get("Date", "")),
        "body": plain.get_content() if plain is not None else "",
        "bodyHtml": html.get_content() if html is not None else "",
        "attachments": attachments,
        "headers": {key.lower(): str(value) for key, value in message.items()},
        "mailbox": mailbox,
        "triggerType": direction,
    }
