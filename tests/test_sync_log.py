from datetime import datetime, timedelta

import pytest

from connector_hub.core.exceptions import InvalidStateTransition
from connector_hub.db.base import utcnow
from connector_hub.models.sync_log import SyncDirection, SyncLog, SyncStatus, SyncType


def new_log(**kwargs):
    defaults = dict(
        tenant_connector_id=1, sync_type=SyncType.manual, direction=SyncDirection.inbound,
        status=SyncStatus.pending, started_at=datetime(2024, 1, 1, 12, 0, 0),
    )
    defaults.update(kwargs)
    return SyncLog(**defaults)


def test_happy_path_records_timestamps():
    log = new_log()
    log.transition(SyncStatus.running)
    assert log.running_at is not None
    log.transition(SyncStatus.completed)
    assert log.is_terminal
    assert log.completed_at >= log.started_at


@pytest.mark.parametrize("terminal", [SyncStatus.completed, SyncStatus.failed])
def test_terminal_states_need_running_first(terminal):
    with pytest.raises(InvalidStateTransition):
        new_log().transition(terminal)


def test_pending_run_can_be_cancelled():
    log = new_log()
    log.transition(SyncStatus.cancelled)
    assert log.is_terminal


@pytest.mark.parametrize("terminal", [SyncStatus.completed, SyncStatus.failed, SyncStatus.cancelled])
def test_terminal_rows_are_frozen(terminal):
    log = new_log(status=SyncStatus.running)
    log.transition(terminal)
    for target in SyncStatus:
        with pytest.raises(InvalidStateTransition):
            log.transition(target)


def test_completed_at_never_precedes_started_at():
    future = utcnow() + timedelta(days=1)
    log = new_log(status=SyncStatus.running, started_at=future)
    log.transition(SyncStatus.failed)
    assert log.completed_at == future
