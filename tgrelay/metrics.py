from __future__ import annotations

from prometheus_client import Counter, Gauge


SESSIONS_CONNECTED = Gauge(
    "tgrelay_sessions_connected",
    "Number of sessions with an open, authorized connection",
)
SESSIONS_AWAITING_QR = Gauge(
    "tgrelay_sessions_awaiting_qr",
    "Number of sessions holding a QR login token",
)
SESSIONS_AWAITING_PASSWORD = Gauge(
    "tgrelay_sessions_awaiting_password",
    "Number of sessions waiting for a second-factor password",
)
SESSIONS_LOGGED_OUT = Gauge(
    "tgrelay_sessions_logged_out",
    "Number of retired sessions that require a new QR scan",
)
SSE_SUBSCRIBERS = Gauge(
    "tgrelay_sse_subscribers",
    "Number of connected status stream subscribers",
)
SESSION_RESTARTS = Counter(
    "tgrelay_session_restarts_total",
    "Total number of automatic session restarts after a disconnect",
)
DISCONNECTS = Counter(
    "tgrelay_disconnects_total",
    "Session connections closed, grouped by status code",
    labelnames=("code",),
)
MESSAGES_SENT = Counter(
    "tgrelay_messages_sent_total",
    "Outbound text messages grouped by result",
    labelnames=("result",),
)

__all__ = [
    "SESSIONS_CONNECTED",
    "SESSIONS_AWAITING_QR",
    "SESSIONS_AWAITING_PASSWORD",
    "SESSIONS_LOGGED_OUT",
    "SSE_SUBSCRIBERS",
    "SESSION_RESTARTS",
    "DISCONNECTS",
    "MESSAGES_SENT",
]
