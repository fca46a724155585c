from __future__ import annotations

import itertools
from typing import Any

import pytest

from havend.codec import decode, encode
from havend.config import HubRuntimeConfig
from havend.constants import (
    ACCESS_ADMIN,
    E_ERROR,
    E_LOGIN,
    E_REGISTER,
    E_REPLY,
    K_BODY,
    K_ID,
    K_REPLY,
    K_T,
)
from havend.envelope import make_envelope
from havend.service import HubService
from havend.storage import SqliteStore


class FakeLink:
    _ids = itertools.count(1)

    def __init__(self) -> None:
        self.link_id = next(self._ids).to_bytes(16, "big")
        self.torn_down = False

    def teardown(self) -> None:
        self.torn_down = True


class FakeTransport:
    """Records every envelope the hub sends, decoded."""

    def __init__(self) -> None:
        self.sent: list[tuple[Any, dict]] = []

    def send(self, link: Any, payload: bytes) -> bool:
        self.sent.append((link, decode(payload)))
        return True

    def envelopes(self, link: Any, event: str | None = None) -> list[dict]:
        return [
            env
            for out_link, env in self.sent
            if out_link is link and (event is None or env[K_T] == event)
        ]

    def bodies(self, link: Any, event: str) -> list[Any]:
        return [env.get(K_BODY) for env in self.envelopes(link, event)]


class Client:
    """One connection to a hub, driven through the packet entry point."""

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.link = FakeLink()
        self.token: str | None = None
        hub.registry.on_link_established(self.link)

    @property
    def transport(self) -> FakeTransport:
        return self.hub.transport

    def send_raw(self, data: bytes) -> None:
        self.hub.dispatcher.route_packet(self.link, data)

    def request(self, event: str, body: dict | None = None) -> dict:
        env = make_envelope(event, body=body)
        self.send_raw(encode(env))
        answers = [
            e for e in self.transport.envelopes(self.link) if e.get(K_REPLY) == env[K_ID]
        ]
        assert len(answers) == 1, answers
        return answers[0]

    def ok(self, event: str, body: dict | None = None) -> Any:
        answer = self.request(event, body)
        assert answer[K_T] == E_REPLY, answer
        return answer[K_BODY].get("data")

    def fail(self, event: str, body: dict | None = None) -> dict:
        answer = self.request(event, body)
        assert answer[K_T] == E_ERROR, answer
        return answer[K_BODY]

    def received(self, event: str) -> list[Any]:
        return self.transport.bodies(self.link, event)

    def system_lines(self) -> list[str]:
        lines: list[str] = []
        for body in self.received("message"):
            lines.extend(body["text"])
        return lines

    def register(self, name: str, password: str = "secret1") -> Any:
        return self.ok(E_REGISTER, {"user": {"userName": name, "password": password}})

    def login(self, name: str, password: str = "secret1", device: str | None = None) -> Any:
        body: dict[str, Any] = {"user": {"userName": name, "password": password}}
        if device is not None:
            body["device"] = {"deviceId": device}
        data = self.ok(E_LOGIN, body)
        self.token = data["token"]
        return data

    def command(self, line: str) -> list[str]:
        return self.ok("command", {"line": line})["lines"]

    def chat(self, room: str, *lines: str) -> Any:
        return self.ok("chatMsg", {"message": {"roomName": room, "text": list(lines)}})

    def close(self) -> None:
        self.hub._on_close(self.link)


def _build_hub(cfg: HubRuntimeConfig) -> HubService:
    return HubService(cfg, store=SqliteStore(":memory:"), transport=FakeTransport())


@pytest.fixture
def config() -> HubRuntimeConfig:
    return HubRuntimeConfig()


@pytest.fixture
def hub(config: HubRuntimeConfig):
    svc = _build_hub(config)
    yield svc
    svc.store.close()


@pytest.fixture
def make_hub():
    built: list[HubService] = []

    def _make(**overrides: Any) -> HubService:
        svc = _build_hub(HubRuntimeConfig(**overrides))
        built.append(svc)
        return svc

    yield _make
    for svc in built:
        svc.store.close()


@pytest.fixture
def connect(hub: HubService):
    def _connect(target: HubService | None = None) -> Client:
        return Client(target or hub)

    return _connect


@pytest.fixture
def user(connect):
    """Factory for a registered, logged-in client."""

    def _user(
        name: str,
        *,
        password: str = "secret1",
        device: str | None = None,
        admin: bool = False,
        target: HubService | None = None,
    ) -> Client:
        client = connect(target)
        client.register(name, password)
        if admin:
            client.hub.store.update_user(name, access_level=ACCESS_ADMIN, visibility=ACCESS_ADMIN)
        client.login(name, password, device)
        return client

    return _user
