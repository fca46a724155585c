import threading

from havend.steps import Command, CommandEngine, StepResult


def _run(target, results, key):
    def _worker():
        try:
            results[key] = target()
        except BaseException as e:  # surfaced by the asserting thread
            results[key] = e

    thread = threading.Thread(target=_worker, daemon=True)
    thread.start()
    return thread


def test_cancel_does_not_wait_for_running_step() -> None:
    entered = threading.Event()
    release = threading.Event()

    def _start(owner, flow, line):
        return StepResult.advance("go?")

    def _slow(owner, flow, line):
        entered.set()
        release.wait(5)
        return StepResult.advance("next?")

    def _last(owner, flow, line):
        return StepResult.done("finished")

    engine = CommandEngine(None, {"slow": Command("slow", steps=(_start, _slow, _last))})
    engine.feed("slow")
    flow = engine.flow

    results: dict = {}
    feeder = _run(lambda: engine.feed("x"), results, "feed")
    assert entered.wait(5)

    canceller = _run(engine.cancel, results, "cancel")
    canceller.join(5)
    assert not canceller.is_alive()
    assert results["cancel"] is True

    release.set()
    feeder.join(5)
    assert not feeder.is_alive()
    assert results["feed"].lines == ["next?"]
    assert results["feed"].active is False
    assert engine.flow is None
    assert flow.active is False
    assert engine.cancel() is False


def test_login_elsewhere_during_team_accept(hub, monkeypatch, connect, user) -> None:
    carol = user("carol")
    alice = user("alice")
    carol.ok("createTeam", {"team": {"teamName": "red"}})
    carol.ok("inviteToTeam", {"user": {"userName": "alice"}})
    alice.command("invitations")

    entered = threading.Event()
    release = threading.Event()
    original = hub.invitations.answer

    def slow_answer(*args, **kwargs):
        entered.set()
        release.wait(5)
        return original(*args, **kwargs)

    monkeypatch.setattr(hub.invitations, "answer", slow_answer)

    second = connect()
    results: dict = {}
    accepting = _run(lambda: alice.command("1 a"), results, "accept")
    try:
        assert entered.wait(5)
        logging_in = _run(lambda: second.login("alice"), results, "login")
        logging_in.join(5)
        assert not logging_in.is_alive()
        assert results["login"]["user"]["userName"] == "alice"
    finally:
        release.set()

    accepting.join(5)
    assert not accepting.is_alive()
    assert isinstance(results["accept"], list)
    assert hub.registry.active_connection_of("alice") is second.link
    assert hub.commands.active_flow(alice.link) is None
    assert alice.received("sessionSuperseded") == [{"userName": "alice"}]


def test_simultaneous_logins_leave_one_connection(hub, connect, user) -> None:
    user("alice").close()
    clients = [connect() for _ in range(4)]
    barrier = threading.Barrier(len(clients))
    results: dict = {}

    def _login(client):
        def _go():
            barrier.wait(5)
            return client.login("alice")

        return _go

    threads = [_run(_login(c), results, i) for i, c in enumerate(clients)]
    for thread in threads:
        thread.join(10)
        assert not thread.is_alive()

    for i in range(len(clients)):
        assert results[i]["user"]["userName"] == "alice"

    active = hub.registry.active_connection_of("alice")
    bound = [c for c in clients if hub.registry.resolve(c.link) == "alice"]
    assert [c.link for c in bound] == [active]

    members = hub.rooms.members("public")
    assert active in members
    for client in clients:
        if client.link is not active:
            assert client.link not in members
            assert client.received("sessionSuperseded") == [{"userName": "alice"}]
    assert hub.stats_manager.get("superseded") == len(clients) - 1
