from apps.checkout.domain import CheckoutStage
from apps.checkout.saga import Saga


def test_compensations_run_newest_first_with_reason():
    calls = []
    saga = Saga()
    saga.add_compensation("release", lambda reason: calls.append(("release", reason)))
    saga.add_compensation("cancel", lambda reason: calls.append(("cancel", reason)))

    failed = saga.compensate("PAYMENT_GATEWAY_ERROR: timeout")

    assert failed == []
    assert calls == [("cancel", "PAYMENT_GATEWAY_ERROR: timeout"), ("release", "PAYMENT_GATEWAY_ERROR: timeout")]
    assert saga.stage == CheckoutStage.FAILED
    assert saga.pending_compensations == []


def test_failing_compensation_does_not_stop_the_rest():
    calls = []

    def broken(reason):
        raise RuntimeError("db down")

    saga = Saga()
    saga.add_compensation("release", lambda reason: calls.append("release"))
    saga.add_compensation("cancel", broken)

    assert saga.compensate("x") == ["cancel"]
    assert calls == ["release"]


def test_complete_discards_compensations():
    calls = []
    saga = Saga()
    saga.advance(CheckoutStage.RESERVING)
    saga.add_compensation("release", lambda reason: calls.append(reason))
    assert saga.pending_compensations == ["release"]

    saga.complete()
    assert saga.stage == CheckoutStage.COMPLETED
    assert saga.compensate("late") == []
    assert calls == []
