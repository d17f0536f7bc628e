import asyncio
import html
import json
import logging
from email.message import EmailMessage

from aio_pika import connect_robust
from aiosmtplib import send

from .config import MAIL_FROM, NOTIFICATION_QUEUE, RABBITMQ_URL, SMTP_HOST, SMTP_PASSWORD, SMTP_PORT, SMTP_USER
from .notifications import TRANSACTION_ACCEPTED, TRANSACTION_REJECTED

logger = logging.getLogger(__name__)


async def worker():
    logger.info("Notification worker started... Listening for messages.")

    connection = await connect_robust(RABBITMQ_URL)
    channel = await connection.channel()
    queue = await channel.declare_queue(NOTIFICATION_QUEUE, durable=True)

    async with queue.iterator() as queue_iter:
        async for message in queue_iter:
            async with message.process():
                await handle_message(message.body)


async def handle_message(body: bytes) -> bool:
    """Parse and deliver one queued notification; the message is acked either way."""
    try:
        payload = json.loads(body)
        logger.info("[worker] Received %s for transaction %s",
                    payload.get("kind"), payload.get("transaction_id"))
        await deliver_notification(payload)
    except Exception:
        logger.exception("[worker] Failed to handle notification message %r", body[:200])
        return False
    return True


async def deliver_notification(payload: dict):
    msg = build_email(payload)
    if msg is None:
        logger.warning("[worker] Unknown notification kind %r, dropping", payload.get("kind"))
        return

    await send(
        msg,
        hostname=SMTP_HOST,
        port=SMTP_PORT,
        start_tls=True,
        username=SMTP_USER or None,
        password=SMTP_PASSWORD or None,
    )
    logger.info("[worker] Email sent to %s", payload["email"])


def build_email(payload: dict):
    kind = payload.get("kind")
    if kind == TRANSACTION_ACCEPTED:
        subject = "Your tickets are confirmed"
        plain_text, html_content = _render_accepted(payload)
    elif kind == TRANSACTION_REJECTED:
        subject = "Your transaction was rejected"
        plain_text, html_content = _render_rejected(payload)
    else:
        return None

    msg = EmailMessage()
    msg["From"] = MAIL_FROM
    msg["To"] = payload["email"]
    msg["Subject"] = subject
    msg.set_content(plain_text)
    msg.add_alternative(html_content, subtype="html")
    return msg


def _escaped(payload: dict) -> dict:
    # Payload values are user-supplied; only escaped copies go into HTML.
    return {key: html.escape(str(value)) if value is not None else None
            for key, value in payload.items()}


def _greeting(payload: dict) -> str:
    return f"Hi {payload.get('user_name') or 'Valued Customer'},"


def _render_accepted(payload: dict):
    total = payload.get("total_amount")
    plain_text = f"""
{_greeting(payload)}

Great news! Your transaction has been accepted.

Transaction ID: {payload['transaction_id']}
Event: {payload['event_name']}
Quantity: {payload['quantity']} ticket(s)
Total Amount: {total}

See you at the event!
"""
    safe = _escaped(payload)
    html_content = f"""
<!DOCTYPE html>
<html>
<body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
    <div style="max-width: 600px; margin: 0 auto; padding: 20px;">
        <div style="background-color: #4CAF50; color: white; padding: 20px; text-align: center;">
            <h1>Transaction Accepted</h1>
        </div>
        <p>{_greeting(safe)}</p>
        <p>Great news! Your transaction has been <strong>accepted</strong>.</p>
        <div style="background-color: #f9f9f9; padding: 15px; border-left: 4px solid #4CAF50;">
            <p><strong>Transaction ID:</strong> {safe['transaction_id']}</p>
            <p><strong>Event:</strong> {safe['event_name']}</p>
            <p><strong>Quantity:</strong> {safe['quantity']} ticket(s)</p>
            <p><strong>Total Amount:</strong> {safe.get('total_amount')}</p>
        </div>
        <p>See you at the event!</p>
    </div>
</body>
</html>
"""
    return plain_text, html_content


def _refund_lines(payload: dict):
    refunds = []
    if payload.get("points_refunded"):
        refunds.append(f"{payload['points_refunded']} points have been refunded to your account.")
    if payload.get("coupon_refunded"):
        refunds.append("Your coupon has been restored and can be used again.")
    if payload.get("seats_released"):
        refunds.append(f"{payload['seats_released']} seat(s) have been released back to the event.")
    return refunds


def _render_rejected(payload: dict):
    refunds = _refund_lines(payload)
    reason = f"Reason: {payload['reason']}\n" if payload.get("reason") else ""

    plain_text = f"""
{_greeting(payload)}

Unfortunately, your transaction has been rejected.

Transaction ID: {payload['transaction_id']}
Event: {payload['event_name']}
Quantity: {payload['quantity']} ticket(s)
{reason}
""" + "\n".join(refunds) + "\n"

    safe = _escaped(payload)
    reason_html = f"<p><strong>Reason:</strong> {safe['reason']}</p>" if payload.get("reason") else ""
    refund_html = "".join(f"<p>{html.escape(line)}</p>" for line in refunds)
    html_content = f"""
<!DOCTYPE html>
<html>
<body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
    <div style="max-width: 600px; margin: 0 auto; padding: 20px;">
        <div style="background-color: #f44336; color: white; padding: 20px; text-align: center;">
            <h1>Transaction Rejected</h1>
        </div>
        <p>{_greeting(safe)}</p>
        <p>Unfortunately, your transaction has been <strong>rejected</strong>.</p>
        <div style="background-color: #f9f9f9; padding: 15px; border-left: 4px solid #f44336;">
            <p><strong>Transaction ID:</strong> {safe['transaction_id']}</p>
            <p><strong>Event:</strong> {safe['event_name']}</p>
            <p><strong>Quantity:</strong> {safe['quantity']} ticket(s)</p>
            {reason_html}
        </div>
        <div style="background-color: #fff3cd; padding: 15px; border-radius: 5px;">
            <h3>Refunds Processed</h3>
            {refund_html}
        </div>
        <p>We apologize for any inconvenience. Please contact support if you have questions.</p>
    </div>
</body>
</html>
"""
    return plain_text, html_content


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(worker())
