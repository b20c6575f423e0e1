"""Tests for the CycleController state machine."""

from datetime import timedelta

import pytest

from conftest import POOR, T0, make_claim, make_protection
from sentinel.controller import SurvivalStatus
from sentinel.policy import CyclePolicy, Mode
from sentinel.results import EarnResult, SpendResult, VerificationDetail


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_full_cycle(self, make_controller, ledger, earner, spender, verifier):
        controller = make_controller()
        record = await controller.run_cycle()

        assert record.success is True
        assert record.error is None
        assert record.cycle_number == 1
        assert record.mode is Mode.NORMAL
        earner.earn.assert_awaited_once()
        spender.spend.assert_awaited_once()
        verifier.verify.assert_awaited_once_with(["0xaaa", "0xbbb"])

        phases = record.phases
        assert phases.health.recommended_mode is Mode.NORMAL
        assert phases.audit.checksum
        assert phases.verify.all_verified is True
        assert phases.report.survival_status is SurvivalStatus.PROFITABLE
        assert phases.report.profit_loss.net_profit == 900_000_000
        assert len(ledger) == 2

    @pytest.mark.asyncio
    async def test_state_after_success(self, make_controller):
        controller = make_controller()
        await controller.run_cycle()
        state = controller.get_state()
        assert state.cycle_count == 1
        assert state.consecutive_failures == 0
        assert state.total_earned == 1_000_000_000
        assert state.total_spent == 100_000_000
        assert state.last_cycle_at is not None
        assert state.wallet_url.endswith("0xAgent")

    @pytest.mark.asyncio
    async def test_report_next_cycle_uses_interval(self, make_controller, clock):
        controller = make_controller(policy=CyclePolicy(CYCLE_INTERVAL_MINUTES=10))
        record = await controller.run_cycle()
        assert record.phases.report.next_cycle_at >= T0 + timedelta(minutes=10)

    @pytest.mark.asyncio
    async def test_get_state_is_a_copy(self, make_controller):
        controller = make_controller()
        snapshot = controller.get_state()
        snapshot.cycle_count = 99
        assert controller.get_state().cycle_count == 0


class TestCounter:
    @pytest.mark.asyncio
    async def test_cycle_numbers_monotonic_across_failures(self, make_controller, probes):
        controller = make_controller()
        numbers = []
        for i in range(5):
            probes.board_up = i % 2 == 0
            record = await controller.run_cycle()
            numbers.append(record.cycle_number)
        assert numbers == [1, 2, 3, 4, 5]
        assert len(controller.history) == 5


class TestStarvation:
    @pytest.mark.asyncio
    async def test_spend_never_called_below_threshold(self, make_controller, probes, spender, ledger):
        probes.balance = POOR
        controller = make_controller()
        record = await controller.run_cycle()

        assert record.success is True
        assert record.mode is Mode.STARVATION
        assert record.phases.spend is None
        spender.spend.assert_not_awaited()
        assert [e.direction.value for e in ledger.get_entries()] == ["income"]

    @pytest.mark.asyncio
    async def test_balance_equal_to_threshold_is_starvation(self, make_controller, probes, policy):
        probes.balance = policy.STARVATION_THRESHOLD_WEI
        record = await make_controller().run_cycle()
        assert record.mode is Mode.STARVATION

    @pytest.mark.asyncio
    async def test_mode_recomputed_each_cycle(self, make_controller, probes):
        controller = make_controller()
        probes.balance = POOR
        assert (await controller.run_cycle()).mode is Mode.STARVATION
        probes.balance = 10 ** 18
        assert (await controller.run_cycle()).mode is Mode.NORMAL


class TestErrorEscalation:
    @pytest.mark.asyncio
    async def test_three_failures_then_error_mode(self, make_controller, probes):
        controller = make_controller()
        probes.board_up = False
        for _ in range(3):
            record = await controller.run_cycle()
            assert record.success is False
        assert controller.get_state().consecutive_failures == 3

        probes.board_up = True
        record = await controller.run_cycle()
        assert record.mode is Mode.ERROR
        assert record.phases.health.recommended_mode is Mode.ERROR
        assert record.success is True
        assert controller.get_state().consecutive_failures == 0

        record = await controller.run_cycle()
        assert record.mode is Mode.NORMAL

    @pytest.mark.asyncio
    async def test_two_failures_not_enough(self, make_controller, probes):
        controller = make_controller()
        probes.board_up = False
        await controller.run_cycle()
        await controller.run_cycle()
        probes.board_up = True
        assert (await controller.run_cycle()).mode is Mode.NORMAL

    @pytest.mark.asyncio
    async def test_error_outranks_starvation(self, make_controller, probes):
        controller = make_controller()
        probes.board_up = False
        for _ in range(3):
            await controller.run_cycle()
        probes.board_up = True
        probes.balance = POOR
        assert (await controller.run_cycle()).mode is Mode.ERROR

    @pytest.mark.asyncio
    async def test_failed_health_phase_still_escalates(self, make_controller, probes):
        controller = make_controller()
        probes.board_up = False
        for _ in range(3):
            assert (await controller.run_cycle()).mode is Mode.NORMAL

        probes.board_up = True
        probes.balance_error = ConnectionError("rpc down")
        record = await controller.run_cycle()
        assert record.success is False
        assert record.phases.health is None
        assert record.mode is Mode.ERROR
        assert controller.get_state().mode is Mode.ERROR

    @pytest.mark.asyncio
    async def test_failed_health_phase_clears_stale_error(self, make_controller, probes):
        controller = make_controller()
        probes.board_up = False
        for _ in range(3):
            await controller.run_cycle()
        probes.board_up = True
        assert (await controller.run_cycle()).mode is Mode.ERROR

        probes.balance_error = ConnectionError("rpc down")
        assert (await controller.run_cycle()).mode is Mode.NORMAL

    @pytest.mark.asyncio
    async def test_failed_health_phase_keeps_starvation(self, make_controller, probes):
        controller = make_controller()
        probes.balance = POOR
        assert (await controller.run_cycle()).mode is Mode.STARVATION

        probes.balance_error = ConnectionError("rpc down")
        assert (await controller.run_cycle()).mode is Mode.STARVATION

    @pytest.mark.asyncio
    async def test_error_mode_spends_by_default(self, make_controller, probes, spender):
        controller = make_controller()
        probes.board_up = False
        for _ in range(3):
            await controller.run_cycle()
        probes.board_up = True
        await controller.run_cycle()
        spender.spend.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_error_mode_spend_skip_policy(self, make_controller, probes, spender):
        controller = make_controller(policy=CyclePolicy(SKIP_SPEND_IN_ERROR_MODE=True))
        probes.board_up = False
        for _ in range(3):
            await controller.run_cycle()
        probes.board_up = True
        record = await controller.run_cycle()
        assert record.phases.spend is None
        spender.spend.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_configurable_threshold(self, make_controller, probes):
        controller = make_controller(policy=CyclePolicy(ERROR_FAILURE_THRESHOLD=1))
        probes.board_up = False
        await controller.run_cycle()
        probes.board_up = True
        assert (await controller.run_cycle()).mode is Mode.ERROR


class TestAbort:
    @pytest.mark.asyncio
    async def test_unreachable_board_aborts_before_earning(
        self, make_controller, probes, earner, spender, verifier, ledger
    ):
        probes.board_up = False
        record = await make_controller().run_cycle()

        assert record.success is False
        assert record.error == "Earning source unreachable"
        assert record.phases.health is not None
        assert record.phases.earn is None
        assert record.phases.audit is None
        earner.earn.assert_not_awaited()
        spender.spend.assert_not_awaited()
        verifier.verify.assert_not_awaited()
        assert len(ledger) == 0

    @pytest.mark.asyncio
    async def test_unexpected_exception_becomes_failed_record(self, make_controller, earner):
        earner.earn.side_effect = RuntimeError("boom")
        controller = make_controller()
        record = await controller.run_cycle()
        assert record.success is False
        assert record.error == "RuntimeError: boom"
        assert controller.get_state().consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_balance_failure_is_caught(self, make_controller, probes):
        async def broken():
            raise ConnectionError("rpc down")
        probes.get_balance = broken
        record = await make_controller().run_cycle()
        assert record.success is False
        assert record.error.startswith("ConnectionError")
        assert record.phases.health is None

    @pytest.mark.asyncio
    async def test_audit_failure_fails_cycle_without_raising(self, make_controller, ledger, monkeypatch):
        def explode(*args, **kwargs):
            raise ValueError("serialization broke")
        monkeypatch.setattr(ledger, "generate_audit_package", explode)
        record = await make_controller().run_cycle()
        assert record.success is False
        assert record.phases.spend is not None
        assert record.phases.audit is None
        assert "serialization broke" in record.error


class TestGracefulDegradation:
    @pytest.mark.asyncio
    async def test_failed_claim_not_recorded(self, make_controller, earner, ledger, spender, verifier):
        earner.earn.return_value = EarnResult(
            tasks_found=1, tasks_completed=1, total_earned=0,
            claims=(make_claim(success=False, error="reverted"),),
        )
        spender.spend.return_value = SpendResult(items_protected=0, total_spent=0)

        controller = make_controller()
        record = await controller.run_cycle()

        assert record.success is True
        assert len(ledger) == 0
        assert controller.get_state().total_earned == 0
        assert record.phases.verify is None
        verifier.verify.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_protection_not_recorded(self, make_controller, spender, ledger):
        spender.spend.return_value = SpendResult(
            items_protected=1, total_spent=100_000_000,
            protections=(make_protection(), make_protection(success=False, error="anchor failed")),
        )
        controller = make_controller()
        record = await controller.run_cycle()
        assert record.success is True
        assert len(ledger.get_entries(direction="expense")) == 1
        assert controller.get_state().total_spent == 100_000_000

    @pytest.mark.asyncio
    async def test_unverified_transactions_do_not_fail_cycle(self, make_controller, verifier):
        async def _unverified(ids):
            return [VerificationDetail(i, False, "") for i in ids]
        verifier.verify.side_effect = _unverified

        record = await make_controller().run_cycle()
        assert record.success is True
        assert record.phases.verify.all_verified is False
        assert record.phases.verify.transactions_verified == 0

    @pytest.mark.asyncio
    async def test_verifier_exception_marks_all_unverified(self, make_controller, verifier):
        verifier.verify.side_effect = TimeoutError("explorer slow")
        record = await make_controller().run_cycle()
        assert record.success is True
        details = record.phases.verify.details
        assert [d.transaction_id for d in details] == ["0xaaa", "0xbbb"]
        assert not any(d.verified for d in details)

    @pytest.mark.asyncio
    async def test_duplicate_tx_ids_verified_once(self, make_controller, spender, verifier):
        spender.spend.return_value = SpendResult(
            items_protected=2, total_spent=2,
            protections=(
                make_protection(spent=1, tx="0xaaa"),
                make_protection(spent=1, tx="0xccc"),
            ),
        )
        await make_controller().run_cycle()
        verifier.verify.assert_awaited_once_with(["0xaaa", "0xccc"])


class TestSurvivalStatus:
    @pytest.mark.parametrize("net,expected", [
        (1, SurvivalStatus.PROFITABLE),
        (0, SurvivalStatus.BREAK_EVEN),
        (-1, SurvivalStatus.LOSS),
    ])
    def test_from_net(self, net, expected):
        assert SurvivalStatus.from_net(net) is expected

    @pytest.mark.asyncio
    async def test_loss_cycle(self, make_controller, earner):
        earner.earn.return_value = EarnResult(tasks_found=0, tasks_completed=0, total_earned=0)
        record = await make_controller().run_cycle()
        assert record.phases.report.survival_status is SurvivalStatus.LOSS
        assert "LOSS" in record.phases.report.status_text


class TestIsolation:
    @pytest.mark.asyncio
    async def test_two_controllers_do_not_share_state(self, make_controller, probes):
        a = make_controller()
        b = make_controller()
        probes.board_up = False
        await a.run_cycle()
        assert a.get_state().consecutive_failures == 1
        assert b.get_state().consecutive_failures == 0
        assert b.get_state().cycle_count == 0

    @pytest.mark.asyncio
    async def test_summary_is_json_friendly(self, make_controller):
        controller = make_controller()
        await controller.run_cycle()
        summary = controller.last_record.summary()
        assert summary["cycleNumber"] == 1
        assert summary["verified"] == "2/2"
        assert summary["survivalStatus"] == "profitable"
