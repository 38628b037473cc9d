# app/core/dispatch/texts.py
"""
Outbound message texts (HTML parse mode).

All user-controlled values (property and cleaner names) go through
``escape`` before being embedded.
"""
from __future__ import annotations

import html
from datetime import datetime
from urllib.parse import quote

# ---------------------------------------------------------------------------
# Callback acknowledgements (toasts)
# ---------------------------------------------------------------------------

ACK_EXPIRED = "This offer has expired or was already answered."
ACK_ALREADY_ANSWERED = "Already answered."
ACK_JOB_TAKEN = "This job was already taken by another cleaner."
ACK_ACCEPTED = "Job accepted!"
ACK_DECLINED = "Declined."
ACK_ERROR = "Something went wrong. Please try again or contact your landlord."

# ---------------------------------------------------------------------------
# Cleaner messages
# ---------------------------------------------------------------------------

ACCEPT_BUTTON = "✅ Accept"
DECLINE_BUTTON = "❌ Decline"
JOB_LINK_BUTTON = "✅ Open job"

CLEANER_ACCEPTED = "✅ You accepted the job. We'll send a reminder before the cleaning window."
CLEANER_JOB_LINK = "When you're done, open the job page and mark the job as done:"
CLEANER_LATE_ACCEPT = "This job was already accepted by someone else. You'll get the next one."
CLEANER_TAKEN_BY_OTHER = "This order was accepted by another cleaner. You'll get the next one."
CLEANER_DECLINED = "OK, we'll offer this job to someone else."
CLEANER_JOB_CANCELLED = "This cleaning job was cancelled by the landlord. No action is needed."

# ---------------------------------------------------------------------------
# Linking / commands
# ---------------------------------------------------------------------------

LINK_INVALID = "This link is invalid or has expired."
LINK_USAGE = "Use the link from your landlord to link your Telegram to Cleaner Dispatch."
LANDLORD_LINKED = "✅ You're linked. You'll receive job updates here (accepted, declined, cleaning completed)."
DONE_NOT_LINKED = "Your Telegram isn't linked to a cleaner account. Use the link from your landlord to link it."
DONE_NO_JOBS = "You have no active cleaning jobs."
DONE_NOT_CONFIGURED = "Job links are not configured. Contact your landlord."
COMMAND_ERROR = "Something went wrong. Please try again or contact your landlord."

# ---------------------------------------------------------------------------
# Landlord buttons
# ---------------------------------------------------------------------------

VIEW_JOB_BUTTON = "View job"
REVIEW_BUTTON = "Review & rate"


def escape(value: str | None) -> str:
    return html.escape(value or "", quote=False)


def format_window(start: datetime, end: datetime) -> str:
    """``05 Mar 2026, 10:00 – 14:00 UTC``"""
    tz = start.tzname() if start.tzinfo else None
    suffix = f" {tz}" if tz else ""
    return f"{start:%d %b %Y, %H:%M} – {end:%H:%M}{suffix}"


def offer_text(property_name: str, window_start: datetime, window_end: datetime, response_minutes: int) -> str:
    return (
        "🧹 <b>Cleaning job</b>\n\n"
        f"Property: <b>{escape(property_name)}</b>\n"
        f"Window: {format_window(window_start, window_end)}\n\n"
        "Tap Accept to take this job, or Decline to pass.\n"
        f"You have about {response_minutes} minutes before we may offer this job to someone else."
    )


def reminder_text(property_name: str, window_start: datetime, window_end: datetime) -> str:
    return (
        "⏰ <b>Reminder: cleaning job coming up</b>\n\n"
        f"Property: <b>{escape(property_name)}</b>\n"
        f"Window: {format_window(window_start, window_end)}\n\n"
        "Please complete the cleaning and mark the job as done when finished."
    )


def cleaner_linked_text(cleaner_name: str) -> str:
    return f"✅ You're linked as <b>{escape(cleaner_name)}</b>. You'll receive cleaning assignments here."


def active_job_text(property_name: str, window_start: datetime, window_end: datetime) -> str:
    return (
        f"🧹 <b>{escape(property_name)}</b> – {format_window(window_start, window_end)}\n\n"
        "Open the job page and mark the job as done:"
    )


def direct_assignment_text(property_name: str, window_start: datetime, window_end: datetime) -> str:
    return (
        "📌 <b>You've been assigned a cleaning job</b>\n\n"
        f"Property: <b>{escape(property_name)}</b>\n"
        f"Window: {format_window(window_start, window_end)}\n\n"
        "We'll send a reminder before the cleaning window."
    )


# ---------------------------------------------------------------------------
# Landlord messages
# ---------------------------------------------------------------------------

def landlord_accepted_text(property_name: str, cleaner_name: str) -> str:
    return (
        "✅ <b>Job accepted</b>\n\n"
        f"<b>{escape(property_name)}</b> – {escape(cleaner_name)} has accepted. You're all set."
    )


def _next_step_line(next_cleaner_name: str | None, unreachable_name: str | None) -> str:
    if next_cleaner_name:
        return f"We've offered the job to <b>{escape(next_cleaner_name)}</b>."
    if unreachable_name:
        return f"We couldn't reach <b>{escape(unreachable_name)}</b>. Please dispatch again."
    return "No other cleaner available. Please assign the job manually."


def landlord_declined_text(
    property_name: str, cleaner_name: str, next_cleaner_name: str | None, unreachable_name: str | None = None
) -> str:
    next_line = _next_step_line(next_cleaner_name, unreachable_name)
    return (
        "❌ <b>Job declined</b>\n\n"
        f"<b>{escape(property_name)}</b> – {escape(cleaner_name)} declined. {next_line}"
    )


def landlord_timed_out_text(
    property_name: str, cleaner_name: str, next_cleaner_name: str | None, unreachable_name: str | None = None
) -> str:
    next_line = _next_step_line(next_cleaner_name, unreachable_name)
    return (
        "⌛ <b>No response</b>\n\n"
        f"<b>{escape(property_name)}</b> – {escape(cleaner_name)} did not answer in time. {next_line}"
    )


def landlord_done_text(property_name: str) -> str:
    return (
        "🏠 <b>Cleaning completed</b>\n\n"
        f"<b>{escape(property_name)}</b> – Property is ready for the next guest. "
        "Please review and rate the cleaner."
    )


# ---------------------------------------------------------------------------
# URLs
# ---------------------------------------------------------------------------

def dashboard_job_url(base_url: str, job_id: str) -> str:
    return f"{base_url}/dashboard/jobs/{job_id}" if base_url else ""


def cleaner_job_url(base_url: str, job_id: str, token: str) -> str:
    return f"{base_url}/job/{job_id}?token={quote(token, safe='')}" if base_url else ""
