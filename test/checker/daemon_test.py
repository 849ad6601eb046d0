import dataclasses
import os
import threading
import time

import pytest

import checker.daemon as examinee
import oci.retry


@pytest.fixture
def request_(tmp_path):
    return examinee.MountRequest(
        bootstrap_path=str(tmp_path / 'image.boot'),
        backend_config={'type': 'localfs', 'config': {'dir': '/blobs'}},
        mountpoint=str(tmp_path / 'mnt'),
        work_dir=str(tmp_path / 'work'),
    )


def script(tmp_path, body: str) -> str:
    path = tmp_path / 'nydusd'
    path.write_text(f'#!/bin/sh\n{body}\n')
    path.chmod(0o755)
    return str(path)


def test_nydusd_config(request_):
    config = examinee.nydusd_config(request_)

    assert config['device']['backend'] == request_.backend_config
    assert config['device']['cache']['config']['work_dir'] == os.path.join(
        request_.work_dir,
        'cache',
    )
    assert config['mode'] == 'direct'


def test_missing_binary(tmp_path, request_):
    daemon = examinee.Nydusd(nydusd_path=str(tmp_path / 'absent'))

    with pytest.raises(examinee.DaemonError):
        daemon.mount(request_)


def test_daemon_exits(tmp_path, request_):
    daemon = examinee.Nydusd(
        nydusd_path=script(tmp_path, 'echo "failed to mount" && exit 3'),
        ready_policy=oci.retry.RetryPolicy(attempts=100, delay=0.05),
    )

    with pytest.raises(examinee.DaemonError, match='failed to mount'):
        daemon.mount(request_)

    assert os.path.isfile(os.path.join(request_.work_dir, 'nydusd-config.json'))


def test_daemon_does_not_mount_in_time(tmp_path, request_):
    daemon = examinee.Nydusd(
        nydusd_path=script(tmp_path, 'exec sleep 30'),
        ready_policy=oci.retry.RetryPolicy(attempts=2, delay=0.01),
    )

    with pytest.raises(examinee.DaemonError, match='in time'):
        daemon.mount(request_)


def test_cancel_while_waiting_for_mount(tmp_path, request_):
    daemon = examinee.Nydusd(
        nydusd_path=script(tmp_path, 'exec sleep 30'),
        ready_policy=oci.retry.RetryPolicy(attempts=100, delay=0.1),
    )
    cancel = oci.retry.CancelToken()
    timer = threading.Timer(0.2, cancel.cancel)
    timer.start()

    started = time.monotonic()
    try:
        with pytest.raises(oci.retry.Cancelled):
            daemon.mount(dataclasses.replace(request_, cancel=cancel))
    finally:
        timer.cancel()

    # the remaining ready-budget (10s) is not waited for
    assert time.monotonic() - started < 5
