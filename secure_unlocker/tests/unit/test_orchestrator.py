"""
Tests for the mount orchestrator.

The supervisor is replaced by a scripted fake so that every branch of the
mount/unmount decision table can be exercised without worker threads.
"""

import pytest

from secure_unlocker.core.errors import ChannelError, OperationalFault, ValidationError
from secure_unlocker.core.volumes.channel import build_slot_channels
from secure_unlocker.core.volumes.models import VolumeState
from secure_unlocker.core.volumes.orchestrator import MountOrchestrator
from secure_unlocker.core.volumes.supervisor import SupervisorError, WorkerSupervisor


class ScriptedSupervisor(WorkerSupervisor):
    """Supervisor whose states are set directly by the test."""

    def __init__(self, names):
        self.states = {name: VolumeState.UNMOUNTED for name in names}
        self.calls = []
        self.fail_start = False
        self.fail_stop = False
        self.fail_state = False

    def state(self, name):
        if self.fail_state:
            raise SupervisorError("systemctl show failed")
        return self.states[name]

    def reset_failed(self, name):
        self.calls.append(("reset_failed", name))
        if self.states[name] is VolumeState.FAILED:
            self.states[name] = VolumeState.UNMOUNTED

    def start(self, name):
        self.calls.append(("start", name))
        if self.fail_start:
            raise SupervisorError("unit not found")
        self.states[name] = VolumeState.AWAITING_SECRET

    def stop(self, name):
        self.calls.append(("stop", name))
        if self.fail_stop:
            raise SupervisorError("umount /mnt/vault")
        self.states[name] = VolumeState.UNMOUNTED


@pytest.fixture
def supervisor(registry):
    return ScriptedSupervisor(registry.names())


@pytest.fixture
def channels(registry):
    return build_slot_channels(registry.names())


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def orchestrator(registry, supervisor, channels, sleeps):
    return MountOrchestrator(
        registry, supervisor, channels,
        settle_delay=0.5, write_timeout=0.05, sleep=sleeps.append,
    )


class TestQueries:
    def test_list_volumes(self, orchestrator, supervisor):
        supervisor.states["vault"] = VolumeState.MOUNTED
        supervisor.states["archive"] = VolumeState.AWAITING_SECRET

        assert orchestrator.list_volumes() == {"archive": "unmounted", "vault": "mounted"}

    def test_status(self, orchestrator, supervisor):
        supervisor.states["vault"] = VolumeState.FAILED
        assert orchestrator.status("vault") is VolumeState.FAILED

    def test_status_unknown_volume(self, orchestrator):
        with pytest.raises(ValidationError, match="Unknown volume 'nope'"):
            orchestrator.status("nope")

    def test_state_query_failure(self, orchestrator, supervisor):
        supervisor.fail_state = True
        with pytest.raises(OperationalFault, match="Failed to query volume state"):
            orchestrator.list_volumes()


class TestMount:
    """Tests for MountOrchestrator.mount()."""

    def test_starts_worker_and_delivers_secret(self, orchestrator, supervisor, channels, sleeps):
        orchestrator.mount("vault", "P")

        assert supervisor.calls == [("reset_failed", "vault"), ("start", "vault")]
        assert sleeps == [0.5]
        assert channels["vault"].receive(timeout=0.1) == b"P"

    def test_running_worker_is_not_restarted(self, orchestrator, supervisor, channels, sleeps):
        supervisor.states["vault"] = VolumeState.AWAITING_SECRET

        orchestrator.mount("vault", "P")

        assert supervisor.calls == []
        assert sleeps == []
        assert channels["vault"].receive(timeout=0.1) == b"P"

    def test_failed_worker_is_reset_and_restarted(self, orchestrator, supervisor):
        supervisor.states["vault"] = VolumeState.FAILED

        orchestrator.mount("vault", "P")

        assert supervisor.calls == [("reset_failed", "vault"), ("start", "vault")]

    @pytest.mark.parametrize("name", ["../etc", "bad name", ""])
    def test_invalid_name(self, orchestrator, supervisor, name):
        with pytest.raises(ValidationError, match="Invalid name format"):
            orchestrator.mount(name, "P")
        assert supervisor.calls == []

    def test_unknown_volume(self, orchestrator):
        with pytest.raises(ValidationError, match="Unknown volume"):
            orchestrator.mount("other", "P")

    @pytest.mark.parametrize("password", ["", None])
    def test_password_required(self, orchestrator, supervisor, password):
        with pytest.raises(ValidationError, match="Password is required in request body"):
            orchestrator.mount("vault", password)
        assert supervisor.calls == []

    def test_already_mounted(self, orchestrator, supervisor):
        supervisor.states["vault"] = VolumeState.MOUNTED

        with pytest.raises(ValidationError, match="Already mounted"):
            orchestrator.mount("vault", "P")

    def test_stopping_volume_rejected(self, orchestrator, supervisor):
        supervisor.states["vault"] = VolumeState.STOPPING

        with pytest.raises(ValidationError, match="being unmounted"):
            orchestrator.mount("vault", "P")

    @pytest.mark.parametrize("state", [VolumeState.STARTING, VolumeState.UNLOCKING])
    def test_mount_in_progress_rejected(self, orchestrator, supervisor, channels, state):
        supervisor.states["vault"] = state

        with pytest.raises(ValidationError, match="Already mounted"):
            orchestrator.mount("vault", "P")
        assert supervisor.calls == []
        assert not channels["vault"].pending

    def test_secret_still_pending_rejected(self, orchestrator, supervisor, channels):
        supervisor.states["vault"] = VolumeState.AWAITING_SECRET
        orchestrator.mount("vault", "P")

        with pytest.raises(ValidationError, match="Already mounted"):
            orchestrator.mount("vault", "P")

        # Still pending while the worker acts on it
        assert channels["vault"].receive(timeout=0.1) == b"P"
        with pytest.raises(ValidationError, match="Already mounted"):
            orchestrator.mount("vault", "P")

    def test_resend_after_wrong_secret(self, orchestrator, supervisor, channels):
        supervisor.states["vault"] = VolumeState.AWAITING_SECRET
        orchestrator.mount("vault", "wrong")
        assert channels["vault"].receive(timeout=0.1) == b"wrong"
        channels["vault"].task_done()

        orchestrator.mount("vault", "P")

        assert channels["vault"].receive(timeout=0.1) == b"P"
        assert supervisor.calls == []

    def test_start_failure(self, orchestrator, supervisor, channels):
        supervisor.fail_start = True

        with pytest.raises(OperationalFault, match="Failed to start mount service"):
            orchestrator.mount("vault", "P")
        assert not channels["vault"].pending

    def test_undelivered_secret(self, orchestrator, channels):
        # The slot is still occupied and no worker drains it
        channels["vault"].send(b"earlier", timeout=0.05)

        with pytest.raises(OperationalFault, match="Failed to write to pipe"):
            orchestrator.mount("vault", "P")

    def test_concurrent_request_rejected(self, registry, supervisor, channels):
        orchestrator = None

        def busy_sleep(seconds):
            with pytest.raises(ValidationError, match="Operation already in progress for 'vault'"):
                orchestrator.mount("vault", "P")
            # A different volume is unaffected
            orchestrator.status("archive")

        orchestrator = MountOrchestrator(registry, supervisor, channels, settle_delay=0.1, sleep=busy_sleep)
        orchestrator.mount("vault", "P")

    def test_channel_error_type(self, orchestrator, channels, monkeypatch):
        def refuse(secret, timeout):
            raise ChannelError("No worker is listening on /run/secure-unlocker/vault")

        monkeypatch.setattr(channels["vault"], "send", refuse)

        with pytest.raises(OperationalFault):
            orchestrator.mount("vault", "P")


class TestUnmount:
    """Tests for MountOrchestrator.unmount()."""

    def test_stops_running_worker(self, orchestrator, supervisor):
        supervisor.states["vault"] = VolumeState.MOUNTED

        orchestrator.unmount("vault")

        assert supervisor.calls == [("stop", "vault")]
        assert supervisor.states["vault"] is VolumeState.UNMOUNTED

    def test_waiting_worker_can_be_stopped(self, orchestrator, supervisor):
        supervisor.states["vault"] = VolumeState.AWAITING_SECRET

        orchestrator.unmount("vault")

        assert supervisor.calls == [("stop", "vault")]

    @pytest.mark.parametrize("state", [VolumeState.UNMOUNTED, VolumeState.FAILED])
    def test_not_active(self, orchestrator, supervisor, state):
        supervisor.states["vault"] = state

        with pytest.raises(ValidationError, match="Mount is not active"):
            orchestrator.unmount("vault")
        assert supervisor.calls == []

    def test_already_stopping(self, orchestrator, supervisor):
        supervisor.states["vault"] = VolumeState.STOPPING

        with pytest.raises(ValidationError, match="already being unmounted"):
            orchestrator.unmount("vault")

    def test_stop_failure(self, orchestrator, supervisor):
        supervisor.states["vault"] = VolumeState.MOUNTED
        supervisor.fail_stop = True

        with pytest.raises(OperationalFault, match="Failed to unmount"):
            orchestrator.unmount("vault")

    def test_invalid_name(self, orchestrator):
        with pytest.raises(ValidationError, match="Invalid name format"):
            orchestrator.unmount("a/b")
