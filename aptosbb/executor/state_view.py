"""State views: the pinned remote snapshot and the session overlay on top of it."""

from __future__ import annotations

import logging
from typing import Protocol

from aptos_sdk.type_tag import StructTag

from aptosbb.core.move import address_hex
from aptosbb.executor.resources import ResourceGroup
from aptosbb.executor.state_key import StateKey, StateKeyKind
from aptosbb.ingestion.ledger_client import RemoteStateReader

logger = logging.getLogger(__name__)

WriteSet = dict[StateKey, "bytes | None"]

# Member writes to one resource group, keyed by the member's struct tag string
GroupPatch = dict[str, "tuple[StructTag, bytes | None]"]


class StateView(Protocol):
    """Read-only access to state values."""

    def get(self, key: StateKey) -> bytes | None: ...

    def get_group_member(self, address: bytes, group_tag: StructTag, member_tag: StructTag) -> bytes | None: ...

    def close(self) -> None: ...


class EmptyStateView:
    """A snapshot with nothing in it, for offline sessions."""

    def get(self, key: StateKey) -> bytes | None:
        return None

    def get_group_member(self, address: bytes, group_tag: StructTag, member_tag: StructTag) -> bytes | None:
        return None

    def close(self) -> None:
        pass


class RemoteSnapshotView:
    """State at a fixed ledger version, served by a fullnode."""

    def __init__(self, reader: RemoteStateReader) -> None:
        self.reader = reader

    @property
    def version(self) -> int:
        return self.reader.version

    def get(self, key: StateKey) -> bytes | None:
        if key.kind == StateKeyKind.RESOURCE:
            return self.reader.fetch_resource(address_hex(key.address), key.label)
        if key.kind == StateKeyKind.MODULE:
            return self.reader.fetch_module(address_hex(key.address), key.label)
        if key.kind == StateKeyKind.TABLE_ITEM:
            return self.reader.fetch_table_item(address_hex(key.handle), key.path)
        # The REST API exposes group members, not whole groups, and has no raw keys.
        logger.debug("No remote lookup for %s", key)
        return None

    def get_group_member(self, address: bytes, group_tag: StructTag, member_tag: StructTag) -> bytes | None:
        return self.reader.fetch_resource(address_hex(address), str(member_tag))

    def close(self) -> None:
        self.reader.close()


class OverlayStateView:
    """Snapshot plus every write applied during the session.

    A ``None`` in the overlay records a deletion and hides the snapshot value.
    Resource groups are overlaid member by member: a member never written in
    the session is still read from the snapshot.
    """

    def __init__(self, base: StateView) -> None:
        self.base = base
        self._writes: WriteSet = {}
        self._group_writes: dict[StateKey, GroupPatch] = {}

    def get(self, key: StateKey) -> bytes | None:
        if key in self._group_writes:
            current = self._writes[key] if key in self._writes else self.base.get(key)
            group = ResourceGroup.from_bytes(current) if current else ResourceGroup()
            apply_patch(group, self._group_writes[key])
            return group.to_bytes() if len(group) else None
        if key in self._writes:
            return self._writes[key]
        return self.base.get(key)

    def get_group_member(self, address: bytes, group_tag: StructTag, member_tag: StructTag) -> bytes | None:
        group_key = StateKey.resource_group(address_hex(address), group_tag)
        patch = self._group_writes.get(group_key)
        if patch is not None and str(member_tag) in patch:
            return patch[str(member_tag)][1]
        if group_key in self._writes:
            group_bytes = self._writes[group_key]
            return ResourceGroup.from_bytes(group_bytes).get(member_tag) if group_bytes else None
        group_bytes = self.base.get(group_key)
        if group_bytes is not None:
            return ResourceGroup.from_bytes(group_bytes).get(member_tag)
        return self.base.get_group_member(address, group_tag, member_tag)

    def apply(self, write_set: WriteSet, group_writes: dict[StateKey, GroupPatch] | None = None) -> None:
        for key, value in write_set.items():
            self._writes[key] = value
            self._group_writes.pop(key, None)
        for key, patch in (group_writes or {}).items():
            self._group_writes.setdefault(key, {}).update(patch)

    @property
    def write_count(self) -> int:
        return len(self._writes) + sum(len(patch) for patch in self._group_writes.values())


class WriteBuffer:
    """Pending writes of one transaction, readable before they are applied."""

    def __init__(self, view: OverlayStateView) -> None:
        self.view = view
        self.writes: WriteSet = {}
        self.group_writes: dict[StateKey, GroupPatch] = {}

    def get(self, key: StateKey) -> bytes | None:
        if key in self.writes:
            return self.writes[key]
        value = self.view.get(key)
        patch = self.group_writes.get(key)
        if patch is None:
            return value
        group = ResourceGroup.from_bytes(value) if value else ResourceGroup()
        apply_patch(group, patch)
        return group.to_bytes() if len(group) else None

    def put(self, key: StateKey, value: bytes | None) -> None:
        self.writes[key] = value

    def get_group_member(self, address: bytes, group_tag: StructTag, member_tag: StructTag) -> bytes | None:
        group_key = StateKey.resource_group(address_hex(address), group_tag)
        patch = self.group_writes.get(group_key, {})
        if str(member_tag) in patch:
            return patch[str(member_tag)][1]
        return self.view.get_group_member(address, group_tag, member_tag)

    def put_group_member(
        self, address: bytes, group_tag: StructTag, member_tag: StructTag, value: bytes | None
    ) -> None:
        group_key = StateKey.resource_group(address_hex(address), group_tag)
        self.group_writes.setdefault(group_key, {})[str(member_tag)] = (member_tag, value)

    def written_bytes(self) -> int:
        total = sum(len(value) for value in self.writes.values() if value is not None)
        for patch in self.group_writes.values():
            total += sum(len(value) for _, value in patch.values() if value is not None)
        return total

    def write_set(self) -> WriteSet:
        """The writes as ledger state keys.

        A group entry carries only the members this buffer wrote; members it
        left untouched keep their snapshot values.
        """
        write_set = dict(self.writes)
        for key, patch in self.group_writes.items():
            group = ResourceGroup()
            apply_patch(group, patch)
            write_set[key] = group.to_bytes()
        return write_set

    def apply_to(self, view: OverlayStateView) -> None:
        view.apply(self.writes, self.group_writes)


def apply_patch(group: ResourceGroup, patch: GroupPatch) -> None:
    for tag, value in patch.values():
        if value is None:
            group.remove(tag)
        else:
            group.put(tag, value)
