from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from .base import OperationContext, OperationRegistry, OperationSpec, maybe_await, parse_options


class SendEmailOptions(BaseModel):
    to: str = Field(..., min_length=1)
    subject: str = Field(..., min_length=1)
    body: str = ""
    template: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class NotificationOptions(BaseModel):
    to: str = Field(..., min_length=1)
    channel: str = "feed"
    message: str = Field(..., min_length=1)
    template: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


async def _send(
    context: OperationContext, *, to: str, channel: str, template: str | None, data: dict[str, Any]
) -> Any:
    if context.notifier is None:
        raise RuntimeError("No notification sender configured")
    receipt = await maybe_await(context.notifier.send(to=to, channel=channel, template=template, data=data))
    return {"to": to, "channel": channel, "template": template, "receipt": receipt}


async def send_email_handler(options: dict[str, Any], context: OperationContext) -> Any:
    parsed = parse_options(SendEmailOptions, options)
    payload = dict(parsed.data)
    payload.update({"subject": parsed.subject, "body": parsed.body})
    return await _send(context, to=parsed.to, channel="email", template=parsed.template, data=payload)


async def notification_handler(options: dict[str, Any], context: OperationContext) -> Any:
    parsed = parse_options(NotificationOptions, options)
    payload = dict(parsed.data)
    payload["message"] = parsed.message
    return await _send(context, to=parsed.to, channel=parsed.channel, template=parsed.template, data=payload)


def register_messaging_operations(registry: OperationRegistry) -> None:
    registry.register(
        OperationSpec(
            type_name="send_email",
            description="Sends an email through the notification sender.",
            handler=send_email_handler,
            category="messaging",
            options_model=SendEmailOptions,
        )
    )
    registry.register(
        OperationSpec(
            type_name="notification",
            description="Sends a notification on a channel such as feed or sms.",
            handler=notification_handler,
            category="messaging",
            options_model=NotificationOptions,
            default_options={"channel": "feed"},
        )
    )
