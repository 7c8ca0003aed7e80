import asyncio
from datetime import timedelta

import pytest

import key_lifecycle.manager as manager_module
from key_lifecycle import (
    CredentialStore,
    LifecycleManager,
    NoRefreshToken,
    NotFoundOrRevoked,
    ProviderRejected,
    StorageFailure,
)
from key_lifecycle.models import RefreshedToken, utcnow

from conftest import FakeProvider, make_identity, make_tokens


def _failing_save(path: str = "api-keys.json"):
    async def save(records):
        raise StorageFailure(path, "write failed: disk full")

    return save


@pytest.mark.asyncio
async def test_issue_then_resolve_returns_issued_token(manager: LifecycleManager, provider: FakeProvider) -> None:
    tokens = make_tokens(expires_in=timedelta(hours=1))

    key = await manager.issue(make_identity(), tokens)
    record = await manager.resolve(key)

    assert key.startswith("md2doc_")
    assert record is not None
    assert record.subject_id == "user-1"
    assert record.access_token == tokens.access_token
    assert provider.refresh_calls == []
    assert key in manager.scheduler


@pytest.mark.asyncio
async def test_issue_persists_before_returning(manager: LifecycleManager, store: CredentialStore) -> None:
    key = await manager.issue(make_identity(), make_tokens())

    on_disk = await store.load()

    assert key in on_disk
    assert on_disk[key].subject_id == "user-1"


@pytest.mark.asyncio
async def test_issue_without_expiry_is_not_scheduled(manager: LifecycleManager) -> None:
    key = await manager.issue(make_identity(), make_tokens(expires_in=None))

    assert key not in manager.scheduler
    assert (await manager.resolve(key)) is not None


@pytest.mark.asyncio
async def test_storage_failure_during_issue_keeps_nothing(
    manager: LifecycleManager, store: CredentialStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(store, "save", _failing_save())

    with pytest.raises(StorageFailure):
        await manager.issue(make_identity(), make_tokens())

    assert len(manager) == 0
    assert len(manager.scheduler) == 0


@pytest.mark.asyncio
async def test_unknown_malformed_and_revoked_keys_all_resolve_to_none(manager: LifecycleManager) -> None:
    key = await manager.issue(make_identity(), make_tokens())
    assert await manager.revoke(key, "user-1") is True

    assert await manager.resolve("md2doc_" + "0" * 32) is None
    assert await manager.resolve("not-a-key") is None
    assert await manager.resolve("") is None
    assert await manager.resolve(key) is None


@pytest.mark.asyncio
async def test_resolve_updates_last_used(
    manager: LifecycleManager, monkeypatch: pytest.MonkeyPatch
) -> None:
    key = await manager.issue(make_identity(), make_tokens(expires_in=timedelta(hours=1)))
    later = utcnow() + timedelta(minutes=1)
    monkeypatch.setattr(manager_module, "_utcnow", lambda: later)

    await manager.resolve(key)

    assert manager.get_record(key).last_used_at == later


@pytest.mark.asyncio
async def test_touch_persist_failure_still_serves_record(
    manager: LifecycleManager, store: CredentialStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    key = await manager.issue(make_identity(), make_tokens())
    before = manager.get_record(key).last_used_at
    monkeypatch.setattr(store, "save", _failing_save())

    record = await manager.resolve(key)

    assert record is not None
    assert record.last_used_at == before


@pytest.mark.asyncio
async def test_token_inside_lookahead_is_refreshed_on_resolve(
    manager: LifecycleManager, provider: FakeProvider
) -> None:
    key = await manager.issue(
        make_identity(), make_tokens(expires_in=timedelta(minutes=4), refresh_token="R1")
    )
    manager.scheduler.cancel(key)

    record = await manager.resolve(key)

    assert provider.refresh_calls == ["R1"]
    assert record is not None
    assert record.access_token == "access-1"
    assert record.access_token_expiry > utcnow() + timedelta(minutes=30)
    # Re-armed for the renewed token
    assert key in manager.scheduler


@pytest.mark.asyncio
async def test_token_outside_lookahead_is_not_refreshed(
    manager: LifecycleManager, provider: FakeProvider
) -> None:
    key = await manager.issue(make_identity(), make_tokens(expires_in=timedelta(minutes=6)))

    record = await manager.resolve(key)

    assert provider.refresh_calls == []
    assert record.access_token == "access-0"


@pytest.mark.asyncio
async def test_refresh_rejection_deactivates_record(
    manager: LifecycleManager, provider: FakeProvider, store: CredentialStore
) -> None:
    key = await manager.issue(make_identity(), make_tokens())
    provider.fail_with = ProviderRejected("invalid_grant", status_code=400)

    with pytest.raises(ProviderRejected):
        await manager.refresh(key)

    assert await manager.resolve(key) is None
    assert manager.get_record(key).active is False
    assert key not in manager.scheduler
    assert (await store.load())[key].active is False


@pytest.mark.asyncio
async def test_unexpected_provider_error_is_wrapped_and_fails_closed(
    manager: LifecycleManager, provider: FakeProvider
) -> None:
    key = await manager.issue(make_identity(), make_tokens())
    provider.fail_with = RuntimeError("connection reset")

    with pytest.raises(ProviderRejected):
        await manager.refresh(key)

    assert manager.get_record(key).active is False


@pytest.mark.asyncio
async def test_reactive_refresh_failure_resolves_to_none(
    manager: LifecycleManager, provider: FakeProvider
) -> None:
    key = await manager.issue(make_identity(), make_tokens(expires_in=timedelta(minutes=1)))
    manager.scheduler.cancel(key)
    provider.fail_with = ProviderRejected("invalid_grant", status_code=400)

    assert await manager.resolve(key) is None
    assert manager.get_record(key).active is False


@pytest.mark.asyncio
async def test_missing_refresh_token_fails_closed(manager: LifecycleManager) -> None:
    key = await manager.issue(make_identity(), make_tokens(refresh_token=None))

    with pytest.raises(NoRefreshToken):
        await manager.refresh(key)

    assert manager.get_record(key).active is False


@pytest.mark.asyncio
async def test_refresh_of_unknown_or_revoked_key_raises_not_found(manager: LifecycleManager) -> None:
    key = await manager.issue(make_identity(), make_tokens())
    await manager.revoke(key, "user-1")

    with pytest.raises(NotFoundOrRevoked):
        await manager.refresh(key)
    with pytest.raises(NotFoundOrRevoked):
        await manager.refresh("md2doc_missing")


@pytest.mark.asyncio
async def test_revocation_during_refresh_is_not_undone(
    store: CredentialStore, settings
) -> None:
    class RevokingProvider(FakeProvider):
        manager: LifecycleManager
        key: str

        async def refresh_access_token(self, refresh_token: str) -> RefreshedToken:
            await self.manager.revoke(self.key, "user-1")
            return await super().refresh_access_token(refresh_token)

    provider = RevokingProvider()
    mgr = LifecycleManager(store=store, provider=provider, settings=settings)
    await mgr.start()
    try:
        key = await mgr.issue(make_identity(), make_tokens())
        provider.manager = mgr
        provider.key = key

        with pytest.raises(NotFoundOrRevoked):
            await mgr.refresh(key)

        record = mgr.get_record(key)
        assert record.active is False
        assert record.access_token == "access-0"
    finally:
        await mgr.close()


@pytest.mark.asyncio
async def test_refresh_persist_failure_restores_token_and_deactivates(
    manager: LifecycleManager, store: CredentialStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    key = await manager.issue(make_identity(), make_tokens())
    before = manager.get_record(key)
    monkeypatch.setattr(store, "save", _failing_save())

    with pytest.raises(StorageFailure):
        await manager.refresh(key)

    record = manager.get_record(key)
    assert record.access_token == before.access_token
    assert record.access_token_expiry == before.access_token_expiry
    assert record.active is False


@pytest.mark.asyncio
async def test_revoke_requires_ownership(manager: LifecycleManager) -> None:
    key = await manager.issue(make_identity("user-b"), make_tokens())

    assert await manager.revoke(key, "user-a") is False
    assert manager.get_record(key).active is True
    assert await manager.resolve(key) is not None


@pytest.mark.asyncio
async def test_revoke_cancels_timer_and_is_one_way(manager: LifecycleManager) -> None:
    key = await manager.issue(make_identity(), make_tokens())

    assert await manager.revoke(key, "user-1") is True
    assert key not in manager.scheduler
    assert await manager.revoke(key, "user-1") is False
    assert await manager.revoke("md2doc_unknown", "user-1") is False


@pytest.mark.asyncio
async def test_revoke_storage_failure_keeps_key_active(
    manager: LifecycleManager, store: CredentialStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    key = await manager.issue(make_identity(), make_tokens())
    monkeypatch.setattr(store, "save", _failing_save())

    with pytest.raises(StorageFailure):
        await manager.revoke(key, "user-1")

    assert manager.get_record(key).active is True
    assert key in manager.scheduler


@pytest.mark.asyncio
async def test_list_for_subject_returns_own_keys_in_issue_order(manager: LifecycleManager) -> None:
    first = await manager.issue(make_identity(), make_tokens())
    await manager.issue(make_identity("someone-else"), make_tokens())
    second = await manager.issue(make_identity(), make_tokens())
    await manager.revoke(first, "user-1")

    summaries = manager.list_for_subject("user-1")

    assert [s.key for s in summaries] == [first, second]
    assert [s.active for s in summaries] == [False, True]
    assert manager.list_for_subject("nobody") == []


@pytest.mark.asyncio
async def test_regenerate_issues_distinct_key_for_same_subject(manager: LifecycleManager) -> None:
    key = await manager.issue(make_identity(), make_tokens(refresh_token="R1"))

    new_key = await manager.regenerate(key)

    assert new_key is not None
    assert new_key != key
    new_record = await manager.resolve(new_key)
    assert new_record.subject_id == "user-1"
    assert new_record.refresh_token == "R1"
    assert (await manager.resolve(key)) is not None
    assert await manager.regenerate("md2doc_unknown") is None


@pytest.mark.asyncio
async def test_cleanup_is_idempotent_and_keeps_recent_or_active(manager: LifecycleManager) -> None:
    stale = await manager.issue(make_identity(), make_tokens())
    active = await manager.issue(make_identity(), make_tokens())
    await manager.revoke(stale, "user-1")

    later = utcnow() + timedelta(days=31)

    assert await manager.cleanup(now=utcnow()) == 0
    assert await manager.cleanup(now=later) == 1
    assert await manager.cleanup(now=later) == 0
    assert manager.get_record(stale) is None
    assert manager.get_record(active) is not None


@pytest.mark.asyncio
async def test_cleanup_storage_failure_restores_records(
    manager: LifecycleManager, store: CredentialStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    key = await manager.issue(make_identity(), make_tokens())
    await manager.revoke(key, "user-1")
    monkeypatch.setattr(store, "save", _failing_save())

    with pytest.raises(StorageFailure):
        await manager.cleanup(now=utcnow() + timedelta(days=31))

    assert manager.get_record(key) is not None


@pytest.mark.asyncio
async def test_restart_round_trip_preserves_records_and_rearms_timers(
    store: CredentialStore, provider: FakeProvider, settings
) -> None:
    first = LifecycleManager(store=store, provider=provider, settings=settings)
    await first.start()
    keys = [
        await first.issue(make_identity(), make_tokens()),
        await first.issue(make_identity("user-2", "bob@example.com"), make_tokens()),
    ]
    revoked = await first.issue(make_identity(), make_tokens())
    await first.revoke(revoked, "user-1")
    before = {key: first.get_record(key).summary() for key in keys}
    await first.close()

    second = LifecycleManager(store=store, provider=provider, settings=settings)
    await second.start()
    try:
        assert sorted(second.scheduler.pending_keys()) == sorted(keys)
        for key in keys:
            record = await second.resolve(key)
            assert record is not None
            assert record.summary().created_at == before[key].created_at
            assert record.summary().access_token_expiry == before[key].access_token_expiry
        assert await second.resolve(revoked) is None
    finally:
        await second.close()


@pytest.mark.asyncio
async def test_scheduled_refresh_failure_deactivates_without_raising(
    manager: LifecycleManager, provider: FakeProvider
) -> None:
    provider.fail_with = ProviderRejected("invalid_grant", status_code=400)

    key = await manager.issue(make_identity(), make_tokens(expires_in=timedelta(minutes=1)))

    for _ in range(50):
        await asyncio.sleep(0.01)
        if not manager.get_record(key).active:
            break

    assert manager.get_record(key).active is False
    assert provider.refresh_calls == ["refresh-1"]


@pytest.mark.asyncio
async def test_short_lived_token_scenario(manager: LifecycleManager, provider: FakeProvider) -> None:
    key = await manager.issue(
        make_identity("U1"), make_tokens(expires_in=timedelta(seconds=1), refresh_token="R1")
    )

    record = await manager.resolve(key)

    # The proactive timer may race the reactive refresh; both use R1
    assert record is not None
    assert provider.refresh_calls
    assert set(provider.refresh_calls) == {"R1"}
    assert record.access_token.startswith("access-")
    assert record.access_token != "access-0"
    assert record.access_token_expiry > utcnow() + timedelta(minutes=30)

    assert await manager.revoke(key, "U1") is True
    assert await manager.resolve(key) is None


@pytest.mark.asyncio
async def test_authorized_client_uses_current_tokens(manager: LifecycleManager) -> None:
    key = await manager.issue(make_identity(), make_tokens(scopes={"drive.file"}))
    record = await manager.resolve(key)

    client = manager.get_authorized_client(record)

    assert client == {"access_token": "access-0", "refresh_token": "refresh-1"}
    assert record.has_scopes(["drive.file"]) is True


@pytest.mark.asyncio
async def test_start_is_idempotent(manager: LifecycleManager) -> None:
    await manager.issue(make_identity(), make_tokens())

    await manager.start()

    assert len(manager) == 1


@pytest.mark.asyncio
async def test_failed_revoke_is_never_written_by_a_concurrent_save(
    manager: LifecycleManager, store: CredentialStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    revoked_key = await manager.issue(make_identity(), make_tokens())
    other_key = await manager.issue(make_identity(), make_tokens())

    real_write = store._write_file
    calls: list[int] = []

    async def slow_then_failing_write(content: str) -> None:
        calls.append(1)
        if len(calls) == 1:
            await asyncio.sleep(0.05)
            raise OSError("disk full")
        await real_write(content)

    monkeypatch.setattr(store, "_write_file", slow_then_failing_write)

    revoke_result, resolved = await asyncio.gather(
        manager.revoke(revoked_key, "user-1"),
        manager.resolve(other_key),
        return_exceptions=True,
    )

    assert isinstance(revoke_result, StorageFailure)
    assert resolved is not None
    assert manager.get_record(revoked_key).active is True
    assert (await store.load())[revoked_key].active is True


@pytest.mark.asyncio
async def test_uncommitted_revoke_is_not_visible_to_resolve(
    manager: LifecycleManager, store: CredentialStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    key = await manager.issue(make_identity(), make_tokens())
    real_save = store.save
    observed: list[bool] = []

    async def observing_save(records):
        observed.append(manager.get_record(key).active)
        await real_save(records)

    monkeypatch.setattr(store, "save", observing_save)

    assert await manager.revoke(key, "user-1") is True

    # Live state flips only after the write returns
    assert observed == [True]
    assert manager.get_record(key).active is False


@pytest.mark.asyncio
async def test_short_token_lifetime_does_not_loop_refreshes(
    manager: LifecycleManager, provider: FakeProvider
) -> None:
    provider.token_lifetime = timedelta(minutes=2)

    key = await manager.issue(make_identity(), make_tokens(expires_in=timedelta(minutes=2)))

    for _ in range(50):
        await asyncio.sleep(0.01)
        if provider.refresh_calls:
            break
    await asyncio.sleep(0.2)

    assert provider.refresh_calls == ["refresh-1"]
    assert key not in manager.scheduler
    assert manager.get_record(key).active is True


@pytest.mark.asyncio
async def test_close_cancels_refresh_in_flight(
    store: CredentialStore, settings, monkeypatch: pytest.MonkeyPatch
) -> None:
    class BlockingProvider(FakeProvider):
        def __init__(self):
            super().__init__()
            self.release = asyncio.Event()

        async def refresh_access_token(self, refresh_token: str) -> RefreshedToken:
            self.refresh_calls.append(refresh_token)
            await self.release.wait()
            return RefreshedToken(
                access_token="access-late", expiry=utcnow() + timedelta(hours=1)
            )

    provider = BlockingProvider()
    mgr = LifecycleManager(store=store, provider=provider, settings=settings)
    await mgr.start()
    key = await mgr.issue(make_identity(), make_tokens(expires_in=timedelta(minutes=1)))

    for _ in range(50):
        await asyncio.sleep(0.01)
        if provider.refresh_calls:
            break
    assert mgr.scheduler.in_flight == 1

    saves: list[int] = []
    real_save = store.save

    async def counting_save(records):
        saves.append(1)
        await real_save(records)

    monkeypatch.setattr(store, "save", counting_save)

    await mgr.close()
    provider.release.set()
    await asyncio.sleep(0.05)

    assert mgr.scheduler.in_flight == 0
    assert saves == []
    assert (await store.load())[key].access_token == "access-0"
