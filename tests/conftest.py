from __future__ import annotations

import time

import jwt
import pytest

from rrcgw.auth import TokenVerifier
from rrcgw.config import GatewayConfig
from rrcgw.constants import K_BODY, K_EVENT
from rrcgw.envelope import decode, encode_event
from rrcgw.gateway import ChatGateway
from rrcgw.identity import REL_IGNORED, TomlIdentityStore
from rrcgw.models import Role, UserRecord
from rrcgw.transport import Connection

SECRET = "test-secret-with-enough-bytes-for-hs256"


class FakeConnection(Connection):
    """Records every outbound frame as a decoded (event, body) pair."""

    def __init__(self, connection_id: str) -> None:
        self.connection_id = connection_id
        self.sent: list[tuple[str, object]] = []
        self.closed = False
        self.fail_sends = False

    def send(self, payload: bytes) -> bool:
        if self.fail_sends:
            return False

        env = decode(payload)
        self.sent.append((env[K_EVENT], env.get(K_BODY)))
        return True

    def close(self) -> None:
        self.closed = True

    def events(self, name: str | None = None) -> list:
        if name is None:
            return [e for e, _ in self.sent]
        return [b for e, b in self.sent if e == name]

    def clear(self) -> None:
        self.sent.clear()


class Clock:
    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


USERS = [
    UserRecord(id="u-owner", username="olivia", email="olivia@example.com", role=Role.OWNER),
    UserRecord(id="u-mod", username="max", email="max@example.com", role=Role.MOD),
    UserRecord(id="u-mod2", username="mona", email="mona@example.com", role=Role.MOD),
    UserRecord(
        id="u-member",
        username="alice",
        email="alice@example.com",
        role=Role.MEMBER,
        avatar="cat",
        pawn="knight",
    ),
    UserRecord(id="u-member2", username="bob", email="bob@example.com", role=Role.MEMBER),
    UserRecord(id="u-guest", username="gus", email="gus@example.com", role=Role.GUEST),
    UserRecord(id="u-outsider", username="oscar", email="oscar@example.com", role=Role.MEMBER),
]


def make_token(sub: str, *, secret: str = SECRET, exp_offset_s: float = 3600.0, **claims) -> str:
    payload = {"sub": sub, "exp": int(time.time() + exp_offset_s), **claims}
    return jwt.encode(payload, secret, algorithm="HS256")


def frame(event: str, body=None) -> bytes:
    return encode_event(event, body)


@pytest.fixture
def store() -> TomlIdentityStore:
    s = TomlIdentityStore()
    for u in USERS:
        s.add_user(u, allow_list=u.id != "u-outsider", powers=("colors",) if u.id == "u-member" else ())
    return s


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def config() -> GatewayConfig:
    return GatewayConfig(token_secret=SECRET, connect_timeout_s=30.0)


@pytest.fixture
def gateway(config, store, clock) -> ChatGateway:
    return ChatGateway(config, store, TokenVerifier(SECRET), clock_ms=clock)


@pytest.fixture
def connect(gateway):
    """Open a connection and complete `connect` as ``subject_id``."""
    counter = {"n": 0}

    def _connect(subject_id: str, *, cid: str | None = None, clear: bool = True) -> FakeConnection:
        counter["n"] += 1
        conn = FakeConnection(cid or f"c{counter['n']}-{subject_id}")
        gateway.on_connect(conn)
        gateway.on_frame(
            conn.connection_id,
            frame("connect", {"token": make_token(subject_id), "userId": subject_id}),
        )
        if clear:
            conn.clear()
        return conn

    return _connect


@pytest.fixture
def ignore(store):
    def _ignore(subject_id: str, ignored_id: str) -> None:
        store.set_relationship(subject_id, ignored_id, REL_IGNORED)

    return _ignore


