"""Deterministic merge of one remote change with local state.

:func:`resolve` is a pure function: it reads the current local email and its
pending mutations and returns what the store should hold afterwards. It never
raises on a conflict.

Content and thread membership always follow the remote. Flags and labels are
merged field by field with last-writer-wins over logical versions:

* a remote observation equal to the last value the remote reported is a
  no-op, which makes re-applying the same change harmless;
* otherwise the remote edit is assigned version ``synced_version + 1`` and
  compared with the version carried by the pending local mutation;
* on a tie the local edit wins for user-settable fields and the remote wins
  for server-owned ones;
* a pending mutation whose value already matches the remote is retired.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from mailmirror.models import (
    ChangeKind,
    Email,
    EmailContent,
    FieldState,
    LocalMutation,
    RemoteChange,
    is_label_field,
    is_user_settable,
    label_field,
)


class Resolution(str, Enum):
    UPSERT = "upsert"
    DELETE = "delete"
    SKIP = "skip"


@dataclass(frozen=True)
class ResolvedState:
    """Outcome of merging one remote change."""

    resolution: Resolution
    content: EmailContent | None = None
    field_states: dict[str, FieldState] = field(default_factory=dict)
    retired_mutations: tuple[str, ...] = ()
    remote_won: tuple[str, ...] = ()
    changed: bool = False


def remote_observations(change: RemoteChange, current: Email | None) -> dict[str, bool]:
    """Field values asserted by a remote change."""

    observed: dict[str, bool] = {}
    if change.kind in (ChangeKind.NEW, ChangeKind.UPDATED, ChangeKind.FLAG_CHANGED):
        observed.update(change.flags)
        if change.labels is not None:
            snapshot = {label_field(name) for name in change.labels}
            if current is not None:
                for name, state in current.field_states.items():
                    if is_label_field(name) and state.remote_value and name not in snapshot:
                        observed[name] = False
            observed.update({name: True for name in snapshot})
    elif change.kind == ChangeKind.LABEL_CHANGED:
        observed.update({label_field(name): False for name in change.labels_removed})
        observed.update({label_field(name): True for name in change.labels_added})
    return observed


def merge_field(
    name: str,
    state: FieldState | None,
    remote_value: bool,
    mutation: LocalMutation | None,
) -> tuple[FieldState, bool, bool]:
    """Merge one remote observation into one field.

    Returns:
        ``(new_state, retire_mutation, remote_won)``.
    """

    if state is None:
        return (
            FieldState(value=remote_value, version=1, synced_version=1, remote_value=remote_value),
            mutation is not None and mutation.value == remote_value,
            True,
        )

    if state.remote_value == remote_value:
        return state, False, False

    remote_version = state.synced_version + 1
    accepted = max(state.version + 1, remote_version)
    remote_state = FieldState(
        value=remote_value,
        version=accepted,
        synced_version=accepted,
        remote_value=remote_value,
    )

    if mutation is None:
        return remote_state, False, True
    if mutation.value == remote_value:
        converged = max(state.version, remote_version)
        return (
            FieldState(
                value=remote_value,
                version=converged,
                synced_version=converged,
                remote_value=remote_value,
            ),
            True,
            False,
        )

    if mutation.version > remote_version:
        local_wins = True
    elif mutation.version < remote_version:
        local_wins = False
    else:
        local_wins = is_user_settable(name)

    if not local_wins:
        return remote_state, True, True
    return (
        state.model_copy(update={"synced_version": remote_version, "remote_value": remote_value}),
        False,
        False,
    )


def resolve(
    change: RemoteChange,
    current: Email | None,
    pending: list[LocalMutation],
) -> ResolvedState:
    """Merge ``change`` into ``current`` given the email's pending local mutations."""

    if change.kind == ChangeKind.DELETED:
        if current is None:
            return ResolvedState(Resolution.SKIP)
        return ResolvedState(
            Resolution.DELETE,
            retired_mutations=tuple(m.id for m in pending),
            changed=True,
        )

    if current is None and change.kind not in (ChangeKind.NEW, ChangeKind.UPDATED):
        return ResolvedState(Resolution.SKIP)

    content = change.content if change.content is not None else current.content
    states = dict(current.field_states) if current is not None else {}
    by_field = {m.field: m for m in pending}

    retired: list[str] = []
    remote_won: list[str] = []
    changed = current is None or content != current.content

    for name, value in sorted(remote_observations(change, current).items()):
        mutation = by_field.get(name)
        new_state, retire, won = merge_field(name, states.get(name), value, mutation)
        if new_state != states.get(name):
            changed = True
        states[name] = new_state
        if retire and mutation is not None:
            retired.append(mutation.id)
        if won:
            remote_won.append(name)

    return ResolvedState(
        Resolution.UPSERT,
        content=content,
        field_states=states,
        retired_mutations=tuple(retired),
        remote_won=tuple(remote_won),
        changed=changed,
    )
