"""Admin-facing message texts and inline keyboards.

All texts are Telegram HTML; record fields are escaped before they are
interpolated.
"""

from datetime import datetime
from html import escape

from telegram import InlineKeyboardButton, InlineKeyboardMarkup

from src.storage.models import MediaRequest, Subscription
from src.workflow.commands import (
    ApproveMedia,
    ApprovePayment,
    ChooseRoot,
    RejectMedia,
    RejectPayment,
    encode_command,
)

DEFAULT_CURRENCY = "MVR"

LANGUAGE_NAMES = {
    "en": "English",
    "eng": "English",
    "es": "Spanish",
    "spa": "Spanish",
    "fr": "French",
    "fre": "French",
    "de": "German",
    "ger": "German",
    "it": "Italian",
    "pt": "Portuguese",
    "ru": "Russian",
    "ar": "Arabic",
    "hi": "Hindi",
    "dv": "Dhivehi",
    "zh": "Chinese",
    "ja": "Japanese",
    "ko": "Korean",
    "tr": "Turkish",
}

START_REPLY = "✅ Approval bot connected."
DELETE_USAGE = "Usage: /delete_request &lt;id&gt;"
NOT_AUTHORIZED = "Not authorized."
MEDIA_REJECTED_TEXT = "❌ <b>Media Request Rejected</b>\nThis request has been rejected."


# =============================================================================
# Formatting helpers
# =============================================================================


def format_date(value: datetime | None) -> str:
    if value is None:
        return "-"
    return value.date().isoformat()


def language_label(value: str | None) -> str:
    """Readable language name for a short ISO code; longer values pass through."""
    raw = str(value or "").strip()
    if not raw:
        return "-"
    if len(raw) > 3:
        return raw
    return LANGUAGE_NAMES.get(raw.lower(), raw)


def _media_language(request: MediaRequest) -> str:
    extra = request.model_extra or {}
    return language_label(request.language or extra.get("original_language") or extra.get("lang"))


def _user_label(sub: Subscription) -> str:
    return escape(sub.username or sub.user_id or "Unknown")


def _amount(sub: Subscription) -> str:
    currency = sub.currency or DEFAULT_CURRENCY
    return f"{escape(currency)} {float(sub.price or 0):,.2f}"


# =============================================================================
# Payments
# =============================================================================


def payment_pending_text(sub: Subscription) -> str:
    days = f"{sub.days} days" if sub.days else "-"
    return (
        "💳 <b>Payment Pending</b>\n"
        f"Date: {format_date(sub.submitted_at)}\n"
        f"User: <b>{_user_label(sub)}</b>\n"
        f"Plan: {escape(sub.plan_name or '-')}\n"
        f"Amount: {_amount(sub)}\n"
        f"Days: {days}"
    )


def payment_result_text(sub: Subscription, approved: bool, admin_name: str) -> str:
    status = "✅ <b>APPROVED</b>" if approved else "❌ <b>REJECTED</b>"
    return (
        f"{status}\n\n"
        f"Date: {format_date(sub.submitted_at)}\n"
        f"User: {_user_label(sub)}\n"
        f"Days Added: {sub.days or '-'}\n"
        f"Approved by: {escape(admin_name or 'admin')}"
    )


def payment_keyboard(subscription_id: str) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        [
            [
                InlineKeyboardButton(
                    "✅ Approve", callback_data=encode_command(ApprovePayment(subscription_id))
                ),
                InlineKeyboardButton(
                    "❌ Reject", callback_data=encode_command(RejectPayment(subscription_id))
                ),
            ]
        ]
    )


def expired_user_text(sub: Subscription) -> str:
    return (
        "⏰ <b>Expired User</b>\n"
        f"User: <b>{_user_label(sub)}</b>\n"
        f"Plan: {escape(sub.plan_name or '-')}\n"
        f"Ended: {format_date(sub.end_date)}"
    )


# =============================================================================
# Media requests
# =============================================================================


def _media_lines(request: MediaRequest, date: datetime | None) -> str:
    return (
        f"Date: {format_date(date)}\n"
        f"Title: <b>{escape(request.display_title)}</b>\n"
        f"Type: {escape((request.media_type or 'movie').upper())}\n"
        f"Language: {escape(_media_language(request))}\n"
        f"Requested by: {escape(request.requester)}"
    )


def media_request_text(request: MediaRequest) -> str:
    return "🎬 <b>Media Request</b>\n" + _media_lines(request, request.submitted)


def media_approved_text(request: MediaRequest) -> str:
    return (
        "✅ <b>APPROVED</b>\n\n"
        + _media_lines(request, request.updated_at)
        + f"\nRoot folder: {escape(request.root_folder or '-')}"
    )


def media_keyboard(request_id: str) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        [
            [
                InlineKeyboardButton(
                    "✅ Approve", callback_data=encode_command(ApproveMedia(request_id))
                ),
                InlineKeyboardButton(
                    "❌ Reject", callback_data=encode_command(RejectMedia(request_id))
                ),
            ]
        ]
    )


def root_prompt_text(request: MediaRequest) -> str:
    return f"Select root folder for <b>{escape(request.display_title)}</b>."


def root_keyboard(request_id: str, roots: list[str]) -> InlineKeyboardMarkup:
    """One button per folder, in the order they were captured."""
    return InlineKeyboardMarkup(
        [
            [
                InlineKeyboardButton(
                    folder, callback_data=encode_command(ChooseRoot(request_id, index))
                )
            ]
            for index, folder in enumerate(roots)
        ]
    )


def media_deleted_text(request: MediaRequest) -> str:
    return f"🗑 <b>Media request deleted</b>\nTitle: {escape(request.display_title)}"
