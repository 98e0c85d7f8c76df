"""Jinja2 rendering of unread-message digest emails."""

from dataclasses import dataclass
from datetime import datetime

from jinja2 import Environment

_env = Environment(autoescape=True, trim_blocks=True, lstrip_blocks=True)

DIGEST_TEMPLATE = _env.from_string(
    """<!DOCTYPE html>
<html lang="fr">
<head><meta charset="utf-8"><title>{{ subject }}</title></head>
<body style="font-family: Arial, sans-serif; color: #1f2937; background: #f9fafb; padding: 24px;">
  <div style="max-width: 560px; margin: 0 auto; background: #ffffff; border-radius: 8px; padding: 24px;">
    <p>Bonjour {{ recipient_name }},</p>
    <p>
      {% if message_count == 1 %}
      Vous avez reçu un nouveau message de <strong>{{ sender_name }}</strong>
      {% else %}
      Vous avez reçu {{ message_count }} nouveaux messages de <strong>{{ sender_name }}</strong>
      {% endif %}
      {% if conversation_subject %} au sujet de « {{ conversation_subject }} »{% endif %}.
    </p>
    {% for message in messages %}
    <div style="border-left: 3px solid #6366f1; padding: 8px 12px; margin: 12px 0; background: #f3f4f6;">
      <div style="font-size: 12px; color: #6b7280;">{{ message.sent_at }}</div>
      <div>{{ message.content }}</div>
    </div>
    {% endfor %}
    {% if message_count > messages|length %}
    <p style="color: #6b7280;">… et {{ message_count - messages|length }} autre(s) message(s).</p>
    {% endif %}
    <p>
      <a href="{{ conversation_url }}"
         style="display: inline-block; background: #6366f1; color: #ffffff; padding: 10px 18px; border-radius: 6px; text-decoration: none;">
        Répondre
      </a>
    </p>
    <p style="font-size: 12px; color: #9ca3af;">
      Vous pouvez désactiver ces emails ou mettre cette conversation en sourdine depuis vos préférences de notification.
    </p>
  </div>
</body>
</html>
"""
)


@dataclass
class DigestMessage:
    content: str
    sent_at: str


def digest_subject(sender_name: str, message_count: int) -> str:
    if message_count > 1:
        return f"{message_count} nouveaux messages de {sender_name}"
    return f"Nouveau message de {sender_name}"


def render_digest(
    *,
    recipient_name: str,
    sender_name: str,
    message_count: int,
    messages: list[tuple[str, datetime]],
    conversation_url: str,
    conversation_subject: str | None = None,
) -> tuple[str, str]:
    """
    Build the subject and HTML body of a digest.

    Args:
        messages: (content, created_at) pairs, newest first

    Returns:
        (subject, html)
    """
    subject = digest_subject(sender_name, message_count)
    html = DIGEST_TEMPLATE.render(
        subject=subject,
        recipient_name=recipient_name,
        sender_name=sender_name,
        message_count=message_count,
        messages=[
            DigestMessage(content=content, sent_at=created_at.strftime("%d/%m/%Y %H:%M"))
            for content, created_at in messages
        ],
        conversation_url=conversation_url,
        conversation_subject=conversation_subject,
    )
    return subject, html
