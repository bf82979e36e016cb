from dataclasses import dataclass

from arang_chat.domain.errors import DomainError

PROBLEM_BASE = "https://example.com/problems/chat"


@dataclass
class SessionCreationFailed(DomainError):
    detail: str = "Cannot start chat, please retry."
    title: str = "Session Creation Failed"
    type: str = f"{PROBLEM_BASE}/session-creation-failed"
    status_code: int = 503


@dataclass
class NoActiveSession(DomainError):
    detail: str = "No active chat session with this customer. They need to start the chat first."
    title: str = "No Active Session"
    type: str = f"{PROBLEM_BASE}/no-active-session"
    status_code: int = 404


@dataclass
class SendFailed(DomainError):
    detail: str = "Message was not sent, please retry."
    title: str = "Send Failed"
    type: str = f"{PROBLEM_BASE}/send-failed"
    status_code: int = 502


@dataclass
class SubscriptionError(DomainError):
    detail: str = "Chat connection issue. Please refresh."
    title: str = "Realtime Error"
    type: str = f"{PROBLEM_BASE}/subscription-error"
    status_code: int = 503


@dataclass
class MarkReadFailed(DomainError):
    detail: str = "Read status could not be updated."
    title: str = "Mark Read Failed"
    type: str = f"{PROBLEM_BASE}/mark-read-failed"
    status_code: int = 409


@dataclass
class HistoryLoadFailed(DomainError):
    detail: str = "Chat could not be loaded, please retry."
    title: str = "History Load Failed"
    type: str = f"{PROBLEM_BASE}/history-load-failed"
    status_code: int = 503
