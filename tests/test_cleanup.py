import asyncio
import threading

from portal_access.service.cleanup import SWEEP_LOCK_NAME, CleanupReport, CleanupScheduler

TENANT = "tenant-7"
CLIENT = "client-42"


async def _seed_expired_history(portal, tenant_id=TENANT, client_id=CLIENT):
    """One-day link, its session and a code, all created at the current clock time."""
    outcome = await portal.issuer.issue(tenant_id, client_id, expiry_days=1)
    session = (await portal.validator.validate(outcome.token)).session
    await portal.otp.request_otp(tenant_id, client_id, session.id, "email")
    return outcome.record, session


class FakeLockCache:
    def __init__(self, acquire_result=True, fail=False):
        self.acquire_result = acquire_result
        self.fail = fail
        self.acquired = []
        self.released = []

    async def acquire_lock(self, name, owner, ttl_seconds):
        if self.fail:
            raise ConnectionError("redis down")
        self.acquired.append((name, owner, ttl_seconds))
        return self.acquire_result

    async def release_lock(self, name, owner):
        self.released.append((name, owner))
        return True


class TestRetentionSweep:
    async def test_recently_expired_rows_are_kept(self, portal):
        await _seed_expired_history(portal)
        portal.clock.advance(days=10)

        report = await portal.cleanup.run_once()

        assert report.links_deleted == 0
        assert report.sessions_deleted == 0
        assert report.otps_deleted == 1
        assert report.tenants_swept == 1

    async def test_rows_past_retention_are_deleted(self, portal):
        link, session = await _seed_expired_history(portal)
        portal.clock.advance(days=32)

        report = await portal.cleanup.run_once()

        assert report.links_deleted == 1
        assert report.sessions_deleted == 1
        assert portal.store.get_magic_link(link.id) is None
        assert portal.store.get_customer_session(session.id) is None
        assert portal.cleanup.last_report is report

    async def test_live_links_survive(self, portal):
        outcome = await portal.issuer.issue(TENANT, CLIENT, expiry_days=60)
        portal.clock.advance(days=45)
        await portal.cleanup.run_once()
        assert portal.store.get_magic_link(outcome.record.id) is not None

    async def test_otps_are_purged_after_a_day(self, portal):
        _, session = await _seed_expired_history(portal)
        portal.clock.advance(hours=23)
        assert (await portal.cleanup.run_once()).otps_deleted == 0
        portal.clock.advance(hours=2)
        assert (await portal.cleanup.run_once()).otps_deleted == 1
        assert portal.store.get_latest_otp_for_session(session.id) is None

    async def test_per_tenant_retention_window(self, portal):
        portal.admin.register_tenant("tenant-short", auto_cleanup_days=3)
        portal.admin.upsert_client("tenant-short", CLIENT, "Jo", email="jo@example.com")
        await _seed_expired_history(portal)
        await _seed_expired_history(portal, tenant_id="tenant-short")
        portal.clock.advance(days=5)

        report = await portal.cleanup.run_once()

        assert report.links_deleted == 1
        assert portal.store.count_magic_links("tenant-short", portal.admin._link_query()) == 0
        assert portal.store.count_magic_links(TENANT, portal.admin._link_query()) == 1

    async def test_disabled_tenant_keeps_history_but_loses_codes(self, portal):
        portal.admin.update_portal_settings(TENANT, {"auto_cleanup_enabled": False})
        link, _ = await _seed_expired_history(portal)
        portal.clock.advance(days=40)

        report = await portal.cleanup.run_once()

        assert report.links_deleted == 0
        assert report.otps_deleted == 1
        assert portal.store.get_magic_link(link.id) is not None

    async def test_manual_trigger_sweeps_disabled_tenant(self, portal):
        portal.admin.update_portal_settings(TENANT, {"auto_cleanup_enabled": False})
        link, _ = await _seed_expired_history(portal)
        portal.clock.advance(days=40)

        report = await portal.admin.run_cleanup(TENANT)

        assert report.links_deleted == 1
        assert portal.store.get_magic_link(link.id) is None

    async def test_failing_tenant_does_not_stop_the_sweep(self, portal, monkeypatch):
        portal.admin.register_tenant("tenant-bad")
        await _seed_expired_history(portal)
        portal.clock.advance(days=32)
        original = portal.store.delete_magic_links_expired_before

        def flaky(tenant_id, cutoff):
            if tenant_id == "tenant-bad":
                raise RuntimeError("disk on fire")
            return original(tenant_id, cutoff)

        monkeypatch.setattr(portal.store, "delete_magic_links_expired_before", flaky)

        report = await portal.cleanup.run_once()

        assert report.failed_tenants == ["tenant-bad"]
        assert report.tenants_swept == 1
        assert report.links_deleted == 1

    async def test_sweep_can_target_tenants(self, portal):
        portal.admin.register_tenant("tenant-other")
        report = await portal.cleanup.run_once(["tenant-other"])
        assert report.tenants_swept == 1


class TestSweepGuards:
    async def test_store_work_runs_off_the_event_loop_thread(self, portal, monkeypatch):
        original = portal.store.list_portal_configs
        threads = []

        def recording():
            threads.append(threading.get_ident())
            return original()

        monkeypatch.setattr(portal.store, "list_portal_configs", recording)

        report = await portal.cleanup.run_once()

        assert report.tenants_swept == 1
        assert threads and threads[0] != threading.get_ident()

    async def test_overlapping_tick_is_skipped(self, portal):
        async with portal.cleanup._sweep_lock:
            report = await portal.cleanup.run_once()
        assert report.skipped
        assert portal.cleanup.last_report is None

    async def test_lock_held_by_other_worker_skips(self, portal, store, settings, clock):
        cache = FakeLockCache(acquire_result=False)
        scheduler = CleanupScheduler(store, portal.policy, settings, clock=clock, cache=cache)

        report = await scheduler.run_once()

        assert report.skipped
        assert cache.acquired[0][0] == SWEEP_LOCK_NAME
        assert cache.released == []

    async def test_shared_lock_is_released_after_sweep(self, portal, store, settings, clock):
        cache = FakeLockCache()
        scheduler = CleanupScheduler(store, portal.policy, settings, clock=clock, cache=cache)

        report = await scheduler.run_once()

        assert not report.skipped
        assert cache.released == [(SWEEP_LOCK_NAME, cache.acquired[0][1])]

    async def test_redis_outage_falls_back_to_local_guard(self, portal, store, settings, clock):
        scheduler = CleanupScheduler(
            store, portal.policy, settings, clock=clock, cache=FakeLockCache(fail=True)
        )
        report = await scheduler.run_once()
        assert not report.skipped
        assert report.tenants_swept == 1

    async def test_scheduler_loop_runs_and_stops(self, portal, store, settings, clock):
        scheduler = CleanupScheduler(
            store, portal.policy, settings, clock=clock, interval_seconds=3600
        )
        await scheduler.start()
        assert scheduler.is_running
        for _ in range(10):
            if scheduler.last_report is not None:
                break
            await asyncio.sleep(0.01)
        await scheduler.stop()

        assert not scheduler.is_running
        assert scheduler.last_report is not None
        assert scheduler.last_report.tenants_swept == 1


def test_report_serializes():
    report = CleanupReport(links_deleted=2, failed_tenants=["x"])
    assert report.as_dict() == {
        "links_deleted": 2,
        "sessions_deleted": 0,
        "otps_deleted": 0,
        "tenants_swept": 0,
        "failed_tenants": ["x"],
        "skipped": False,
    }
