from agent_chat.domain.cancellation import CancelToken


def test_first_reason_wins():
    token = CancelToken()
    assert token.cancel("superseded")
    assert not token.cancel("shutdown")
    assert token.cancelled
    assert token.reason == "superseded"


def test_cancel_hooks_run_once():
    token = CancelToken()
    calls = []
    token.on_cancel(lambda: calls.append("close"))
    token.cancel("timeout")
    token.cancel("user")
    assert calls == ["close"]


def test_hook_registered_after_cancel_runs_immediately():
    token = CancelToken()
    token.cancel("shutdown")
    calls = []
    token.on_cancel(lambda: calls.append("late"))
    assert calls == ["late"]


def test_failing_hook_does_not_block_others():
    token = CancelToken()
    calls = []

    def broken():
        raise RuntimeError("already closed")

    token.on_cancel(broken)
    token.on_cancel(lambda: calls.append("second"))
    assert token.cancel("user")
    assert calls == ["second"]
