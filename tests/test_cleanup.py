"""Tests for resource discovery and cleanup."""
import os
from datetime import datetime, timedelta

import pytest

from rigging.models.config import CleanupSettings
from rigging.orchestration.cleanup import CleanupManager, DiscoveredResource
from rigging.orchestration.volumes import VolumeManager

from conftest import FakeEnvironment, FakeRuntime

NOW = datetime(2026, 3, 1, 12, 0, 0)


def make_dir(base, name, age=None, size=10):
    path = base / "environments" / name
    path.mkdir(parents=True)
    (path / "data.bin").write_bytes(b"x" * size)
    if age is not None:
        stamp = (NOW - age).timestamp()
        os.utime(path, (stamp, stamp))
    return path


@pytest.fixture
def base(tmp_path):
    return tmp_path / "work"


@pytest.fixture
def runtime():
    return FakeRuntime(available=False)


def make_manager(base, runtime, **settings):
    return CleanupManager(base, settings=CleanupSettings(**settings), runtime=runtime, clock=lambda: NOW)


class TestDiscovery:
    """Test host resource discovery."""

    def test_discovers_environment_directories(self, base, runtime):
        """Directories under environments/ and prefixed top-level dirs are found."""
        make_dir(base, "web-1", size=100)
        (base / "rigging-test-scratch").mkdir(parents=True)
        (base / "unrelated").mkdir()

        resources = {r.id: r for r in make_manager(base, runtime).discover()}

        assert set(resources) == {"web-1", "rigging-test-scratch"}
        assert resources["web-1"].kind == "directory"
        assert resources["web-1"].size_bytes == 100

    def test_discovers_containers(self, base):
        """Runtime containers matching the prefix are resources."""
        runtime = FakeRuntime()
        runtime.containers = [{
            'name': 'rigging-test-web-1',
            'created_at': NOW - timedelta(hours=2),
            'status': 'Up 2 hours',
            'running': True,
        }]
        resources = make_manager(base, runtime).discover()
        assert [(r.id, r.kind, r.running) for r in resources] == [("rigging-test-web-1", "container", True)]

    def test_stale_vm_pid_file_removed(self, base, runtime, monkeypatch):
        """PID files of dead VMs are deleted, not reported."""
        vm_dir = base / "environments" / "db-1" / "rigging-test-vm-db-1"
        vm_dir.mkdir(parents=True)
        pid_file = vm_dir / "rigging-test-vm-db-1.pid"
        pid_file.write_text("424242\n")
        monkeypatch.setattr("rigging.orchestration.cleanup.psutil.pid_exists", lambda pid: False)

        resources = make_manager(base, runtime).discover()

        assert [r.kind for r in resources] == ["directory"]
        assert not pid_file.exists()

    def test_age_hours(self):
        """Age is measured against the supplied clock."""
        resource = DiscoveredResource(id="x", kind="directory", created_at=NOW - timedelta(hours=5))
        assert resource.age_hours(NOW) == pytest.approx(5)
        assert DiscoveredResource(id="y", kind="directory").age_hours(NOW) == 0.0


class TestCleanup:
    """Test resource removal."""

    def test_cleanup_older_than(self, base, runtime):
        """Only resources past the age threshold are removed."""
        old = make_dir(base, "a-1", age=timedelta(days=10))
        young = make_dir(base, "b-2", age=timedelta(hours=1))
        manager = make_manager(base, runtime)

        records = manager.cleanup_older_than(24)

        assert [r.resource_id for r in records] == ["a-1"]
        assert records[0].success
        assert records[0].bytes_freed == 10
        assert not old.exists()
        assert young.exists()

    def test_cleanup_older_than_small_threshold(self, base, runtime):
        """A threshold below every age removes everything."""
        make_dir(base, "a-1", age=timedelta(days=10))
        make_dir(base, "b-2", age=timedelta(hours=1))
        records = make_manager(base, runtime).cleanup_older_than(0.5)
        assert sorted(r.resource_id for r in records) == ["a-1", "b-2"]

    def test_container_cleanup(self, base):
        """Running containers are stopped before removal."""
        runtime = FakeRuntime()
        runtime.containers = [{
            'name': 'rigging-test-old',
            'created_at': NOW - timedelta(hours=48),
            'status': 'Up 2 days',
            'running': True,
        }]
        records = make_manager(base, runtime).cleanup_older_than(24)

        assert records[0].actions == ["container_stopped", "container_removed"]
        assert ("stop", "rigging-test-old") in runtime.calls
        assert ("remove", "rigging-test-old") in runtime.calls

    def test_live_vm_cleanup(self, base, runtime, monkeypatch):
        """Live VMs are terminated and their directory removed."""
        vm_dir = base / "environments" / "db-1" / "rigging-test-vm-db-1"
        vm_dir.mkdir(parents=True)
        (vm_dir / "rigging-test-vm-db-1.pid").write_text("424242\n")
        terminated = []
        monkeypatch.setattr("rigging.orchestration.cleanup.psutil.pid_exists", lambda pid: True)
        monkeypatch.setattr("rigging.orchestration.cleanup._terminate",
                            lambda pid: terminated.append(pid) or True)

        manager = make_manager(base, runtime)
        vm = [r for r in manager.discover() if r.kind == "vm"][0]
        record = manager.cleanup_resource(vm)

        assert terminated == [424242]
        assert "vm_stopped" in record.actions
        assert not vm_dir.exists()

    def test_unknown_kind_recorded(self, base, runtime):
        """Unknown resource kinds fail without raising."""
        record = make_manager(base, runtime).cleanup_resource(DiscoveredResource(id="z", kind="pod"))
        assert not record.success
        assert "Unknown resource kind" in record.errors[0]

    def test_cleanup_environment(self, base, runtime):
        """Live environments are torn down with their volumes and work dir."""
        work_dir = base / "environments" / "web-1"
        work_dir.mkdir(parents=True)
        volumes = VolumeManager(work_dir)
        volumes.add_artifact_volume()
        env = FakeEnvironment("web", {'work_dir': str(work_dir)})
        env.setup()

        record = make_manager(base, runtime).cleanup_environment(env, volumes)

        assert record.success
        assert record.actions == ["stopped", "volumes_cleaned", "work_dir_removed"]
        assert env.teardown_calls == 1
        assert not work_dir.exists()
        assert record.completed_at == NOW

    def test_cleanup_environment_never_raises(self, base, runtime):
        """Teardown failures are recorded on the record."""
        class BrokenEnvironment(FakeEnvironment):
            def teardown(self):
                raise RuntimeError("stuck")

        env = BrokenEnvironment("web")
        env.setup()
        record = make_manager(base, runtime).cleanup_environment(env)
        assert not record.success
        assert record.errors == ["teardown failed"]

    def test_operations_logged(self, base, runtime):
        """Cleanup records are persisted to the operation log."""
        make_dir(base, "a-1", age=timedelta(days=3))
        manager = make_manager(base, runtime)
        manager.cleanup_older_than(24)

        stats = make_manager(base, runtime).statistics()
        assert stats['total_cleanups'] == 1
        assert stats['successful_cleanups'] == 1
        assert stats['bytes_freed'] == 10


class TestResourceLimits:
    """Test disk, count and age enforcement."""

    def test_disk_limit_removes_largest_first(self, base, runtime):
        """Disk pressure removes the largest resource until under the limit."""
        big = make_dir(base, "big-1", age=timedelta(hours=1), size=6000)
        small = make_dir(base, "small-2", age=timedelta(hours=1), size=1000)
        manager = make_manager(base, runtime, max_disk_gb=5500 / 1024 ** 3)

        records = manager.enforce_resource_limits()

        assert [r.resource_id for r in records] == ["big-1"]
        assert not big.exists()
        assert small.exists()

    def test_count_limit_removes_oldest(self, base, runtime):
        """Excess resources are removed oldest first."""
        oldest = make_dir(base, "a-1", age=timedelta(hours=3))
        make_dir(base, "b-2", age=timedelta(hours=2))
        make_dir(base, "c-3", age=timedelta(hours=1))
        manager = make_manager(base, runtime, max_environments=2)

        records = manager.enforce_resource_limits()

        assert [r.resource_id for r in records] == ["a-1"]
        assert not oldest.exists()

    def test_age_limit(self, base, runtime):
        """Resources past max age are removed by enforcement."""
        make_dir(base, "a-1", age=timedelta(hours=30))
        records = make_manager(base, runtime, max_age_hours=24).enforce_resource_limits()
        assert [r.resource_id for r in records] == ["a-1"]


class TestOrphansAndEmergency:
    """Test orphan sweeping and emergency cleanup."""

    def test_orphaned_vm_disk_removed(self, base, runtime):
        """VM disks without a PID file are removed, empty dirs pruned."""
        vm_dir = base / "environments" / "db-1" / "rigging-test-vm-db-1"
        vm_dir.mkdir(parents=True)
        disk = vm_dir / "rigging-test-vm-db-1.qcow2"
        disk.write_bytes(b"qcow")

        make_manager(base, runtime).cleanup_orphans()

        assert not disk.exists()
        assert not (base / "environments").exists()

    def test_container_prune(self, base):
        """Stopped managed containers are pruned when the runtime is available."""
        runtime = FakeRuntime()
        make_manager(base, runtime).cleanup_orphans()
        assert runtime.calls[0] == ("run", ["container", "prune", "-f", "--filter", "label=rigging-test=true"])

    def test_emergency_cleanup(self, base):
        """Everything under the work dir goes and the log is reset."""
        runtime = FakeRuntime()
        env_dir = make_dir(base, "a-1", age=timedelta(hours=1))
        manager = make_manager(base, runtime)

        records = manager.emergency_cleanup()

        assert [r.resource_id for r in records] == ["a-1"]
        assert not env_dir.exists()
        assert ("prune",) in runtime.calls
        assert len(manager.operations) == 0

    def test_resource_usage(self, base, runtime):
        """Usage reports disk bytes and environment count."""
        make_dir(base, "a-1", size=2048)
        usage = make_manager(base, runtime).resource_usage()
        assert usage['disk_usage'] >= 2048
        assert usage['environment_count'] == 1

    def test_periodic_cleanup_stops(self, base, runtime):
        """The periodic loop can be stopped."""
        stop = make_manager(base, runtime).start_periodic(interval_hours=1)
        stop.set()
        assert stop.is_set()
