"""Tests for aptosbb.harness.session — the AptosBB harness."""

from __future__ import annotations

import asyncio
from unittest.mock import patch

import httpx
import pytest
from aptos_sdk import ed25519
from aptos_sdk.account import Account
from aptos_sdk.account_address import AccountAddress
from aptos_sdk.bcs import Serializer
from aptos_sdk.type_tag import StructTag

from aptosbb.core.errors import (
    BuildError,
    ConnectivityError,
    IdentifierError,
    UnknownAccountError,
    VerificationWarning,
    ViewFunctionError,
)
from aptosbb.core.move import address_hex, parse_address
from aptosbb.core.types import BalanceState, ExecutionStatusKind, StatusCode, TransactionStatus
from aptosbb.executor.natives import NativeContext, decode_args, encode
from aptosbb.executor.resources import (
    OBJECT_GROUP_TAG,
    AccountResource,
    FungibleStoreResource,
    ObjectCoreResource,
    PackageRegistryResource,
    primary_apt_store,
)
from aptosbb.executor.state_key import StateKey
from aptosbb.harness.payloads import transfer_payload
from aptosbb.harness.session import GAS_UNIT_PRICE, MAX_GAS_AMOUNT, AptosBB

from conftest import CHAIN_ID, DEFAULT_BALANCE, NODE_URL, NOW, FakeNode, bcs, ledger_info


# ── Construction ─────────────────────────────────────────────────────────────


class TestConstruction:
    @pytest.mark.asyncio
    async def test_from_network_latest_pins_snapshot(self, settings, fake_node: FakeNode):
        fake_node.info = ledger_info(version=987, chain_id=2, timestamp_secs=NOW - 10)
        aptosbb = await AptosBB.from_network_latest(
            node_url=NODE_URL, settings=settings, transport=fake_node.transport
        )
        assert aptosbb.version == 987
        assert aptosbb.chain_id == 2
        assert aptosbb.executor.block_time_secs == NOW - 10

    @pytest.mark.asyncio
    async def test_api_key_forwarded_as_bearer(self, settings, fake_node: FakeNode):
        await AptosBB.from_mainnet_latest_with_api_key(
            "secret", node_url=NODE_URL, settings=settings, transport=fake_node.transport
        )
        assert fake_node.requests[0].headers["Authorization"] == "Bearer secret"

    @pytest.mark.asyncio
    async def test_anonymous_sends_no_credentials(self, settings, fake_node: FakeNode):
        await AptosBB.from_mainnet_latest(node_url=NODE_URL, settings=settings, transport=fake_node.transport)
        assert "Authorization" not in fake_node.requests[0].headers

    @pytest.mark.asyncio
    async def test_connectivity_error_propagates(self, settings):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ConnectivityError):
            await AptosBB.from_network_latest(
                node_url=NODE_URL, settings=settings, transport=httpx.MockTransport(refuse)
            )

    @pytest.mark.asyncio
    async def test_forked_reads_resolve_against_snapshot(self, settings, fake_node: FakeNode):
        owner = parse_address("0xcafe")
        resource = AccountResource.new(owner, owner.address)
        resource.sequence_number = 17
        fake_node.resources[(address_hex(owner), str(AccountResource.struct_tag()))] = resource.to_bytes()

        aptosbb = await AptosBB.from_network_latest(
            node_url=NODE_URL, settings=settings, transport=fake_node.transport
        )
        read = aptosbb.read_account_resource(owner)
        assert read is not None
        assert read.sequence_number == 17
        state_reads = [r for r in fake_node.requests if "/accounts/" in r.url.path]
        assert state_reads[0].url.params["ledger_version"] == "1234567"

    @pytest.mark.asyncio
    async def test_fork_session_creates_and_funds_accounts(self, settings, fake_node: FakeNode):
        aptosbb = await AptosBB.from_network_latest(
            node_url=NODE_URL, settings=settings, transport=fake_node.transport
        )
        account = aptosbb.create_account()
        assert aptosbb.verify_account_exists(account.address())
        assert aptosbb.read_aptos_balance(account.address()) == DEFAULT_BALANCE

    def test_in_memory_snapshot(self, harness: AptosBB):
        assert harness.version == 0
        assert harness.chain_id == CHAIN_ID
        assert harness.snapshot.timestamp_secs == NOW

    def test_close_releases_node_connection(self, settings, fake_node: FakeNode):
        aptosbb = asyncio.run(
            AptosBB.from_network_latest(node_url=NODE_URL, settings=settings, transport=fake_node.transport)
        )
        with aptosbb:
            aptosbb.create_account()
        assert aptosbb.executor.state.base.reader._client.is_closed

    def test_in_memory_session_is_a_context_manager(self, settings, builder):
        with AptosBB.in_memory(CHAIN_ID, timestamp_secs=NOW, settings=settings, builder=builder) as aptosbb:
            assert aptosbb.create_account() is not None


class TestForkedState:
    UNTRANSFERABLE = StructTag.from_str("0x1::object::Untransferable")

    @pytest.fixture
    def forked(self, settings, fake_node: FakeNode) -> AptosBB:
        """A fork in which 0xcafe already owns an untransferable APT store."""
        owner = parse_address("0xcafe")
        store_address = address_hex(primary_apt_store(owner))
        fake_node.resources[(store_address, str(FungibleStoreResource.struct_tag()))] = FungibleStoreResource(
            metadata=parse_address("0xa"), balance=5
        ).to_bytes()
        fake_node.resources[(store_address, str(ObjectCoreResource.struct_tag()))] = ObjectCoreResource(
            owner=owner
        ).to_bytes()
        fake_node.resources[(store_address, str(self.UNTRANSFERABLE))] = b"\x00"
        return asyncio.run(
            AptosBB.from_network_latest(node_url=NODE_URL, settings=settings, transport=fake_node.transport)
        )

    def _member(self, aptosbb: AptosBB, tag: StructTag) -> bytes | None:
        store = primary_apt_store(parse_address("0xcafe"))
        return aptosbb.executor.state.get_group_member(store.address, StructTag.from_str(OBJECT_GROUP_TAG), tag)

    def test_local_writes_keep_snapshot_group_members(self, forked: AptosBB):
        assert self._member(forked, self.UNTRANSFERABLE) == b"\x00"
        forked.create_account_at("0xcafe")
        assert self._member(forked, self.UNTRANSFERABLE) == b"\x00"
        assert forked.read_aptos_balance(parse_address("0xcafe")) == DEFAULT_BALANCE

    def test_transfers_keep_snapshot_group_members(self, forked: AptosBB):
        owner = forked.create_account_at("0xcafe")
        bob = forked.create_account()
        assert forked.run_transaction(owner, transfer_payload(bob.address(), 1_000)).is_success()
        assert self._member(forked, self.UNTRANSFERABLE) == b"\x00"
        assert self._member(forked, ObjectCoreResource.struct_tag()) == ObjectCoreResource(
            owner=parse_address("0xcafe")
        ).to_bytes()

    def test_node_failure_during_execution_is_discarded(self, forked: AptosBB, fake_node: FakeNode):
        alice = forked.create_account()
        fake_node.state_status = 500
        output = forked.submit(alice, transfer_payload(parse_address("0xbeef"), 1))
        assert output.status.discard_code == StatusCode.STORAGE_ERROR
        assert output.write_set == {}
        assert forked.sequence_numbers.peek(alice.address()) == 1
        fake_node.state_status = None
        assert forked.read_account_resource(alice.address()).sequence_number == 0

    def test_node_failure_during_view_raises_view_error(self, forked: AptosBB, fake_node: FakeNode):
        fake_node.state_status = 503
        with pytest.raises(ViewFunctionError, match="STORAGE_ERROR"):
            forked.execute_view_function(
                "0x1", "account", "exists_at", [], [bcs(parse_address("0xf00d"), Serializer.struct)]
            )


# ── Accounts and sequence numbers ────────────────────────────────────────────


class TestAccounts:
    def test_created_account_exists(self, harness: AptosBB):
        account = harness.create_account()
        assert harness.verify_account_exists(account.address())
        assert harness.exists_resource(account.address(), "0x1::account::Account")

    def test_created_account_is_funded(self, harness: AptosBB, alice):
        assert harness.read_aptos_balance(alice.address()) == DEFAULT_BALANCE

    def test_create_account_at_chosen_address(self, harness: AptosBB):
        account = harness.create_account_at("0xbeef")
        assert account.address().address == parse_address("0xbeef").address
        assert harness.sequence_numbers.is_registered(account.address())

    def test_fresh_accounts_have_distinct_addresses(self, harness: AptosBB):
        assert harness.create_account().address().address != harness.create_account().address().address

    def test_next_counter_defaults_to_zero(self, harness: AptosBB):
        unseen = parse_address("0x1234")
        assert harness.next_counter(unseen) == 0
        assert harness.next_counter(unseen) == 1

    def test_failed_verification_warns_and_skips_registration(self, harness: AptosBB):
        with patch.object(harness, "verify_account_exists", return_value=False):
            with pytest.warns(VerificationWarning):
                account = harness.create_account_at("0xfeed")
        assert account is not None
        assert not harness.sequence_numbers.is_registered(account.address())

    def test_create_account_warns_but_still_registers(self, harness: AptosBB):
        with patch.object(harness, "read_account_resource", return_value=None):
            with pytest.warns(VerificationWarning):
                account = harness.create_account()
        assert harness.sequence_numbers.is_registered(account.address())


class TestSequenceNumbers:
    def test_counter_counts_attempts_not_successes(self, harness: AptosBB, alice, bob):
        harness.run_transaction(alice, transfer_payload(bob.address(), 10))
        harness.run_transaction(alice, transfer_payload(bob.address(), DEFAULT_BALANCE * 10))  # aborts
        harness.run_entry_function(alice, "0x1", "no_such_module", "f")  # linker error
        assert harness.sequence_numbers.peek(alice.address()) == 3

    def test_kept_failures_keep_chain_in_step(self, harness: AptosBB, alice, bob):
        statuses = [
            harness.run_transaction(alice, transfer_payload(bob.address(), DEFAULT_BALANCE * 10)),
            harness.run_transaction(alice, transfer_payload(bob.address(), 1)),
        ]
        assert statuses[0].execution.kind == ExecutionStatusKind.MOVE_ABORT
        assert statuses[1].is_success()
        assert harness.read_account_resource(alice.address()).sequence_number == 2

    def test_unregistered_sender_defaults_to_zero(self, harness: AptosBB):
        account = harness.executor.new_account_at(parse_address("0xabc"))
        status = harness.run_entry_function(account, "0x1", "aptos_account", "transfer", [], [
            bcs(parse_address("0xdef"), Serializer.struct),
            bcs(1, Serializer.u64),
        ])
        assert status.is_success()
        assert harness.sequence_numbers.peek(account.address()) == 1

    def test_strict_mode_rejects_unregistered_sender(self, strict_settings, builder):
        aptosbb = AptosBB.in_memory(CHAIN_ID, timestamp_secs=NOW, settings=strict_settings, builder=builder)
        account = aptosbb.executor.new_account_at(parse_address("0xabc"))
        with pytest.raises(UnknownAccountError):
            aptosbb.run_transaction(account, transfer_payload(parse_address("0xdef"), 1))
        assert aptosbb.sequence_numbers.peek(account.address()) == 0

    def test_stale_sequence_number_is_discarded(self, harness: AptosBB, alice, bob):
        harness.sequence_numbers.register(alice.address(), 5)
        output = harness.submit(alice, transfer_payload(bob.address(), 1))
        assert output.status.is_discarded()
        assert output.status.discard_code == StatusCode.SEQUENCE_NUMBER_TOO_NEW
        assert harness.sequence_numbers.peek(alice.address()) == 6


# ── Transactions ─────────────────────────────────────────────────────────────


class TestTransactions:
    def test_transfer_moves_exact_amount(self, harness: AptosBB, alice, bob):
        amount = 5_000_000
        a_before = harness.read_aptos_balance(alice.address())
        b_before = harness.read_aptos_balance(bob.address())

        output = harness.run_transaction_with_output(alice, transfer_payload(bob.address(), amount))

        assert output.status.is_success()
        assert harness.read_aptos_balance(bob.address()) - b_before == amount
        fee = output.gas_used * GAS_UNIT_PRICE
        assert a_before - harness.read_aptos_balance(alice.address()) == amount + fee

    def test_impostor_key_cannot_spend(self, harness: AptosBB, alice, bob):
        impostor = Account(alice.address(), ed25519.PrivateKey.random())
        before = harness.read_aptos_balance(bob.address())
        status = harness.run_transaction(impostor, transfer_payload(bob.address(), 777))
        assert status.discard_code == StatusCode.INVALID_AUTH_KEY
        assert harness.read_aptos_balance(bob.address()) == before

    def test_transfer_creates_missing_recipient(self, harness: AptosBB, alice):
        recipient = parse_address("0x5151")
        harness.run_transaction(alice, transfer_payload(recipient, 42))
        assert harness.verify_account_exists(recipient)
        assert harness.read_aptos_balance(recipient) == 42

    def test_missing_module_is_kept_with_linker_error(self, harness: AptosBB, alice):
        status = harness.run_entry_function(alice, "0xdead", "ghost", "haunt")
        assert status.is_kept()
        assert status.execution.status_code == StatusCode.LINKER_ERROR
        assert harness.sequence_numbers.peek(alice.address()) == 1

    def test_aborted_payload_still_pays_gas(self, harness: AptosBB, alice, bob):
        before = harness.read_aptos_balance(alice.address())
        output = harness.submit(alice, transfer_payload(bob.address(), DEFAULT_BALANCE * 10))
        assert output.status.execution.kind == ExecutionStatusKind.MOVE_ABORT
        assert before - harness.read_aptos_balance(alice.address()) == output.gas_used * GAS_UNIT_PRICE

    def test_expired_clock_discards(self, harness: AptosBB, alice, bob):
        harness.advance_clock(NOW + 10 * 365 * 24 * 3600)
        status = harness.run_transaction(alice, transfer_payload(bob.address(), 1))
        assert status.is_discarded()
        assert status.discard_code == StatusCode.TRANSACTION_EXPIRED

    def test_signed_with_policy_constants(self, harness: AptosBB, alice, bob):
        with patch.object(harness.executor, "execute_and_apply", wraps=harness.executor.execute_and_apply) as spy:
            harness.run_transaction(alice, transfer_payload(bob.address(), 1))
        txn = spy.call_args.args[0].transaction
        assert txn.max_gas_amount == MAX_GAS_AMOUNT
        assert txn.gas_unit_price == GAS_UNIT_PRICE
        assert txn.chain_id == CHAIN_ID
        assert txn.expiration_timestamps_secs > harness.executor.block_time_secs

    def test_invalid_identifier_raises(self, harness: AptosBB, alice):
        with pytest.raises(IdentifierError):
            harness.run_entry_function(alice, "0x1", "bad-module", "f")
        assert harness.sequence_numbers.peek(alice.address()) == 0


# ── Publishing ───────────────────────────────────────────────────────────────


def _counter_natives(aptosbb: AptosBB, owner: AccountAddress) -> None:
    """Register Python stand-ins for a tiny counter module published at ``owner``."""
    calls: list[int] = []

    def bump(ctx: NativeContext, ty_args, args):
        (by,) = decode_args(args, lambda der: der.u64())
        calls.append(by)

    def value(ctx: NativeContext, ty_args, args):
        decode_args(args)
        return [encode(sum(calls), Serializer.u64)]

    aptosbb.register_native(f"{address_hex(owner)}::counter::bump", bump)
    aptosbb.register_native(f"{address_hex(owner)}::counter::value", value, view=True)


class TestPublish:
    def test_publish_writes_modules_and_registry(self, harness: AptosBB, builder, alice, counter_package):
        builder.build.return_value = counter_package
        status = harness.publish_package(alice, "/packages/counter")

        assert status.is_success()
        assert harness.read_state_value(StateKey.module(alice.address(), "counter")) == counter_package.modules[0]
        registry = harness.read_resource(alice.address(), PackageRegistryResource)
        assert [p.name for p in registry.packages] == ["counter"]

    def test_publish_uses_maximal_build_options(self, harness: AptosBB, builder, alice, counter_package):
        builder.build.return_value = counter_package
        harness.publish_package(alice, "/packages/counter", named_addresses={"counter": "0xa11ce"})
        options = builder.build.call_args.args[1]
        assert options.with_srcs and options.with_abis and options.with_source_maps and options.with_error_map
        assert options.named_addresses == {"counter": "0xa11ce"}

    def test_build_failure_returns_synthetic_status(self, harness: AptosBB, builder, alice):
        builder.build.side_effect = BuildError("unbound module", "/packages/broken")
        status = harness.publish_package(alice, "/packages/broken")
        assert status == TransactionStatus.build_failure()
        assert str(status) == "Keep(MiscellaneousError(ABORTED))"
        assert harness.sequence_numbers.peek(alice.address()) == 0

    def test_published_function_is_callable(self, harness: AptosBB, builder, alice, counter_package):
        builder.build.return_value = counter_package
        harness.publish_package(alice, "/packages/counter")
        _counter_natives(harness, alice.address())

        status = harness.run_entry_function(alice, alice.address(), "counter", "bump", [], [bcs(3, Serializer.u64)])
        assert status.is_success()

    def test_module_without_native_fails_resolution(self, harness: AptosBB, builder, alice, counter_package):
        builder.build.return_value = counter_package
        harness.publish_package(alice, "/packages/counter")
        status = harness.run_entry_function(alice, alice.address(), "counter", "bump", [], [bcs(1, Serializer.u64)])
        assert status.execution.status_code == StatusCode.FUNCTION_RESOLUTION_FAILURE

    def test_publish_then_view_scenario(self, harness: AptosBB, builder, counter_package):
        builder.build.return_value = counter_package
        account = harness.create_account()
        assert harness.publish_package(account, "/packages/counter").is_success()
        _counter_natives(harness, account.address())

        harness.run_entry_function(account, account.address(), "counter", "bump", [], [bcs(7, Serializer.u64)])
        values = harness.execute_view_function(account.address(), "counter", "value")
        assert values == [bcs(7, Serializer.u64)]


# ── Reads ────────────────────────────────────────────────────────────────────


class TestReads:
    def test_reads_are_idempotent(self, harness: AptosBB, alice):
        first = harness.read_account_resource(alice.address())
        assert harness.read_account_resource(alice.address()) == first
        assert harness.exists_resource(alice.address(), "0x1::account::Account") is True
        assert harness.exists_resource(alice.address(), "0x1::account::Account") is True

    def test_exists_resource_false_when_absent(self, harness: AptosBB):
        assert harness.exists_resource(parse_address("0x77"), "0x1::account::Account") is False

    def test_exists_resource_uses_access_path_scheme(self, harness: AptosBB, alice):
        calls = []
        original = harness.read_state_value

        def first_scheme_misses(key):
            calls.append(key)
            return None if len(calls) == 1 else original(key)

        with patch.object(harness, "read_state_value", side_effect=first_scheme_misses):
            assert harness.exists_resource(alice.address(), "0x1::account::Account")
        assert len(calls) == 2

    def test_balance_of_storeless_address_is_zero(self, harness: AptosBB):
        nobody = parse_address("0x404")
        assert harness.read_aptos_balance(nobody) == 0
        assert harness.get_apt_balance(nobody) is None
        assert harness.read_balance_state(nobody).state == BalanceState.NO_STORE

    def test_balance_state_distinguishes_drained_account(self, harness: AptosBB):
        drained = harness.executor.new_account_at(parse_address("0xd1"), balance=0)
        reading = harness.read_balance_state(drained.address())
        assert reading.state == BalanceState.ZERO
        assert harness.read_aptos_balance(drained.address()) == 0
        assert not harness.has_apt_balance(drained)

    def test_balance_state_nonzero(self, harness: AptosBB, alice):
        reading = harness.read_balance_state(alice.address())
        assert reading.state == BalanceState.NONZERO
        assert reading.amount == DEFAULT_BALANCE
        assert harness.get_apt_balance(alice.address()) == DEFAULT_BALANCE
        assert harness.has_apt_balance(alice)


# ── View functions ───────────────────────────────────────────────────────────


class TestViewFunctions:
    def test_framework_view(self, harness: AptosBB, alice):
        values = harness.execute_view_function(
            "0x1", "account", "exists_at", [], [bcs(alice.address(), Serializer.struct)]
        )
        assert values == [bcs(True, Serializer.bool)]

    def test_coin_balance_view(self, harness: AptosBB, alice):
        values = harness.execute_view_function(
            "0x1", "coin", "balance", ["0x1::aptos_coin::AptosCoin"], [bcs(alice.address(), Serializer.struct)]
        )
        assert values == [bcs(DEFAULT_BALANCE, Serializer.u64)]

    def test_unparseable_reference_raises_identifier_error(self, harness: AptosBB):
        with pytest.raises(IdentifierError):
            harness.execute_view_function("0x1", "account", "exists at")

    def test_missing_module_raises_view_error(self, harness: AptosBB):
        with pytest.raises(ViewFunctionError, match="LINKER_ERROR"):
            harness.execute_view_function("0xdead", "ghost", "boo")

    def test_abort_raises_view_error(self, harness: AptosBB):
        with pytest.raises(ViewFunctionError):
            harness.execute_view_function(
                "0x1", "account", "get_sequence_number", [], [bcs(parse_address("0x404"), Serializer.struct)]
            )

    def test_view_does_not_touch_overlay_or_counters(self, harness: AptosBB, alice):
        writes = harness.executor.state.write_count
        harness.execute_view_function("0x1", "account", "exists_at", [], [bcs(alice.address(), Serializer.struct)])
        assert harness.executor.state.write_count == writes
        assert harness.sequence_numbers.peek(alice.address()) == 0

    def test_writing_native_rejected_in_view(self, harness: AptosBB, alice):
        def sneaky(ctx: NativeContext, ty_args, args):
            ctx.create_account(parse_address("0x5ee"))
            return []

        harness.register_native("0x1::account::sneaky", sneaky, view=True)
        with pytest.raises(ViewFunctionError):
            harness.execute_view_function("0x1", "account", "sneaky")
        assert not harness.verify_account_exists(parse_address("0x5ee"))
