"""Embedding text contract.

The text embedded for an email is its subject followed by its body truncated
to a fixed number of characters. Any change to this format must be paired
with a model/version change so stored vectors are recomputed.
"""

from __future__ import annotations

from mailmirror.models import Email


def build_embedding_text(subject: str, body: str, *, max_chars: int) -> str:
    subject = " ".join(subject.split())
    body = body.strip()[: max(0, max_chars)]
    if not body:
        return subject
    return f"{subject}\n\n{body}" if subject else body


def email_embedding_text(email: Email, *, max_chars: int) -> str:
    return build_embedding_text(email.content.subject, email.content.body, max_chars=max_chars)
