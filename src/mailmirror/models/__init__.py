"""Data models for mailmirror.

This module contains Pydantic models for data validation and serialization.
"""

from mailmirror.models.account import Account, AccountStatus, ProviderKind, SyncState
from mailmirror.models.changes import (
    Ack,
    ChangeBatch,
    ChangeKind,
    ChangeNotification,
    LocalMutation,
    MutationStatus,
    NotificationKind,
    PushResult,
    RemoteChange,
    RemoteRejected,
    TransientFailure,
)
from mailmirror.models.email import (
    ARCHIVED,
    DELETED,
    DELIVERED,
    READ,
    SERVER_FLAGS,
    STARRED,
    USER_FLAGS,
    Contact,
    Email,
    EmailContent,
    EmbeddingVector,
    FieldState,
    Label,
    Thread,
    compute_content_hash,
    is_label_field,
    is_user_settable,
    label_field,
    label_name,
)

__all__ = [
    "ARCHIVED",
    "Account",
    "AccountStatus",
    "Ack",
    "ChangeBatch",
    "ChangeKind",
    "ChangeNotification",
    "Contact",
    "DELETED",
    "DELIVERED",
    "Email",
    "EmailContent",
    "EmbeddingVector",
    "FieldState",
    "Label",
    "LocalMutation",
    "MutationStatus",
    "NotificationKind",
    "ProviderKind",
    "PushResult",
    "READ",
    "RemoteChange",
    "RemoteRejected",
    "SERVER_FLAGS",
    "STARRED",
    "SyncState",
    "Thread",
    "TransientFailure",
    "USER_FLAGS",
    "compute_content_hash",
    "is_label_field",
    "is_user_settable",
    "label_field",
    "label_name",
]
