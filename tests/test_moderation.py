from conftest import frame

from rrcgw.models import Role


def _ban(gateway, actor, target, **body) -> None:
    payload = {"userId": target.connection_id, "reason": "spam", "hours": 2, **body}
    gateway.on_frame(actor.connection_id, frame("banUser", payload))


def test_mod_can_kick_member(gateway, connect) -> None:
    mod = connect("u-mod")
    alice = connect("u-member")
    mod.clear()

    gateway.on_frame(mod.connection_id, frame("kickUser", {"userId": alice.connection_id}))

    assert alice.events() == ["kicked"]
    assert alice.closed
    assert gateway.registry.get(alice.connection_id) is None
    assert [u["username"] for u in mod.events("users")[-1]] == ["max"]
    assert gateway.stats.get("kicks") == 1


def test_member_cannot_kick(gateway, connect) -> None:
    alice = connect("u-member")
    bob = connect("u-member2")

    gateway.on_frame(alice.connection_id, frame("kickUser", {"userId": bob.connection_id}))

    assert alice.events("error") == [
        {"message": "Unauthorized: You do not have permission to kick users"}
    ]
    assert not bob.closed
    assert gateway.registry.get(bob.connection_id) is not None


def test_mod_cannot_kick_another_mod(gateway, connect) -> None:
    mod = connect("u-mod")
    mod2 = connect("u-mod2")

    gateway.on_frame(mod.connection_id, frame("kickUser", {"userId": mod2.connection_id}))

    assert mod.events("error") == [{"message": "You cannot kick moderators or owners"}]
    assert not mod2.closed


def test_owner_can_kick_a_mod(gateway, connect) -> None:
    owner = connect("u-owner")
    mod = connect("u-mod")

    gateway.on_frame(owner.connection_id, frame("kickUser", {"userId": mod.connection_id}))

    assert mod.closed


def test_kick_unknown_target_reports_not_found(gateway, connect) -> None:
    mod = connect("u-mod")

    gateway.on_frame(mod.connection_id, frame("kickUser", {"userId": "c-missing"}))

    assert mod.events("error") == [{"message": "User not found or not authenticated"}]


def test_mod_ban_marks_session_and_notifies(gateway, connect, store) -> None:
    mod = connect("u-mod")
    alice = connect("u-member")
    bob = connect("u-member2")
    mod.clear()
    alice.clear()

    _ban(gateway, mod, alice, reason="flooding")

    assert alice.events()[0] == "userRestricted"
    assert alice.events("userRestricted") == [
        {"type": "ban", "message": "You have been banned by a moderator. Reason: flooding"}
    ]
    assert not alice.closed
    assert gateway.registry.get(alice.connection_id).banned is True

    entry = next(u for u in bob.events("users")[-1] if u["id"] == alice.connection_id)
    assert entry["isBanned"] is True

    assert mod.events("banSuccess") == [{"message": "User alice has been banned"}]
    assert mod.events().index("users") < mod.events().index("banSuccess")

    bans = store.list_bans("u-member")
    assert len(bans) == 1
    assert bans[0].banned_by_id == "u-mod"
    assert not bans[0].is_permanent


def test_banned_user_cannot_send(gateway, connect) -> None:
    owner = connect("u-owner")
    alice = connect("u-member")
    _ban(gateway, owner, alice)
    alice.clear()

    gateway.on_frame(alice.connection_id, frame("sendMessage", {"text": "hello?"}))

    assert alice.events() == ["error"]
    assert alice.events("error") == [
        {"message": "You are currently banned from sending messages"}
    ]
    assert owner.events("message") == []


def test_ban_applies_to_every_session_of_the_subject(gateway, connect) -> None:
    mod = connect("u-mod")
    first = connect("u-member")
    second = connect("u-member")

    _ban(gateway, mod, first)

    assert gateway.registry.get(second.connection_id).banned is True
    assert len(second.events("userRestricted")) == 1


def test_mod_cannot_ban_owner(gateway, connect, store) -> None:
    mod = connect("u-mod")
    owner = connect("u-owner")
    owner.clear()

    _ban(gateway, mod, owner)

    assert mod.events("error") == [{"message": "You cannot ban moderators or owners"}]
    assert store.list_bans("u-owner") == []
    assert owner.events() == []


def test_owner_ban_of_mod_succeeds(gateway, connect) -> None:
    owner = connect("u-owner")
    mod = connect("u-mod")

    _ban(gateway, owner, mod)

    assert len(owner.events("banSuccess")) == 1
    mod.clear()
    gateway.on_frame(mod.connection_id, frame("sendMessage", {"text": "hi"}))
    assert mod.events("error") == [{"message": "You are currently banned from sending messages"}]


def test_permanent_ban_requires_owner(gateway, connect, store) -> None:
    mod = connect("u-mod")
    alice = connect("u-member")

    _ban(gateway, mod, alice, hours=None, isPermanent=True)

    assert mod.events("error") == [{"message": "Only the owner can permanently ban users"}]
    assert store.list_bans("u-member") == []


def test_owner_permanent_ban(gateway, connect, store) -> None:
    owner = connect("u-owner")
    alice = connect("u-member")

    _ban(gateway, owner, alice, hours=None, isPermanent=True)

    bans = store.list_bans("u-member")
    assert len(bans) == 1
    assert bans[0].is_permanent
    assert bans[0].expires_at is None


def test_ban_hours_out_of_range_denied(gateway, connect, store) -> None:
    mod = connect("u-mod")
    alice = connect("u-member")

    for hours in (0, 7, "lots", None):
        mod.clear()
        _ban(gateway, mod, alice, hours=hours)
        assert mod.events("error") == [{"message": "Ban duration must be between 1 and 6 hours"}]

    assert store.list_bans("u-member") == []
    assert gateway.registry.get(alice.connection_id).banned is False


def test_ban_store_failure_reports_generic_error_to_actor_only(
    gateway, connect, store, monkeypatch
) -> None:
    def boom(actor_id, request):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(store, "ban_user", boom)
    mod = connect("u-mod")
    alice = connect("u-member")
    alice.clear()

    _ban(gateway, mod, alice)

    assert mod.events("error") == [{"message": "Failed to ban user"}]
    assert alice.events() == []
    assert gateway.registry.get(alice.connection_id).banned is False


def test_ban_unknown_target(gateway, connect) -> None:
    mod = connect("u-mod")
    gateway.on_frame(
        mod.connection_id, frame("banUser", {"userId": "c-ghost", "reason": "x", "hours": 1})
    )
    assert mod.events("error") == [{"message": "User not found or not authenticated"}]


def test_owner_updates_role(gateway, connect, store) -> None:
    owner = connect("u-owner")
    alice = connect("u-member")
    owner.clear()

    gateway.on_frame(
        owner.connection_id,
        frame("updateUserRole", {"userId": alice.connection_id, "role": "mod"}),
    )

    assert alice.events()[0] == "roleUpdated"
    assert alice.events("roleUpdated") == [{"role": "mod"}]
    assert gateway.registry.get(alice.connection_id).role is Role.MOD
    assert store.find_by_id("u-member").role is Role.MOD
    assert owner.events("roleUpdateSuccess") == [
        {"message": "User role has been updated to mod"}
    ]
    entry = next(u for u in owner.events("users")[-1] if u["id"] == alice.connection_id)
    assert entry["role"] == "mod"


def test_mod_cannot_update_roles(gateway, connect, store) -> None:
    mod = connect("u-mod")
    alice = connect("u-member")

    gateway.on_frame(
        mod.connection_id,
        frame("updateUserRole", {"userId": alice.connection_id, "role": "mod"}),
    )

    assert mod.events("error") == [{"message": "Only the owner can update user roles"}]
    assert store.find_by_id("u-member").role is Role.MEMBER


def test_invalid_role_is_rejected(gateway, connect) -> None:
    owner = connect("u-owner")
    alice = connect("u-member")

    gateway.on_frame(
        owner.connection_id,
        frame("updateUserRole", {"userId": alice.connection_id, "role": "emperor"}),
    )

    assert owner.events("error") == [{"message": "Invalid role"}]


def test_promoted_role_takes_effect_for_next_send(gateway, connect, clock) -> None:
    owner = connect("u-owner")
    gus = connect("u-guest")

    gateway.on_frame(gus.connection_id, frame("sendMessage", {"text": "one"}))
    clock.advance(600)
    gateway.on_frame(
        owner.connection_id,
        frame("updateUserRole", {"userId": gus.connection_id, "role": "mod"}),
    )
    gus.clear()

    gateway.on_frame(gus.connection_id, frame("sendMessage", {"text": "two"}))

    assert gus.events("error") == []
    assert len(gus.events("message")) == 1


def test_unwritable_store_fails_ban_and_role_change(gateway, connect, store, tmp_path) -> None:
    # Writes to a path that is a directory fail with OSError.
    target = tmp_path / "users.toml"
    target.mkdir()
    store.path = str(target)

    owner = connect("u-owner")
    alice = connect("u-member")
    alice.clear()

    _ban(gateway, owner, alice)
    gateway.on_frame(
        owner.connection_id,
        frame("updateUserRole", {"userId": alice.connection_id, "role": "mod"}),
    )

    assert owner.events("error") == [
        {"message": "Failed to ban user"},
        {"message": "Failed to update user role"},
    ]
    assert owner.events("banSuccess") == []
    assert owner.events("roleUpdateSuccess") == []
    assert alice.events() == []
    assert not store.is_banned("u-member")
    assert store.find_by_id("u-member").role is Role.MEMBER
