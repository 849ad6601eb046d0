# SPDX-FileCopyrightText: 2024 SAP SE or an SAP affiliate company and Gardener contributors
#
# SPDX-License-Identifier: Apache-2.0

import abc
import dataclasses
import json
import logging
import os
import subprocess

import oci.retry

logger = logging.getLogger(__name__)


class DaemonError(RuntimeError):
    pass


@dataclasses.dataclass(frozen=True)
class MountRequest:
    '''
    bootstrap_path: path to (raw) nydus-bootstrap to be mounted
    backend_config: nydusd-backend-config (see `backend.Backend.nydusd_config`)
    mountpoint: (existing, empty) directory to mount to
    work_dir: scratch-directory (for daemon-config, blob-cache, ...)
    cancel: aborts waiting for the mount to become ready
    '''
    bootstrap_path: str
    backend_config: dict
    mountpoint: str
    work_dir: str
    cancel: oci.retry.CancelToken | None = None


class MountHandle(abc.ABC):
    '''
    a mounted (readonly) filesystem-view; use as context-manager to ensure it is unmounted
    '''
    mountpoint: str

    @abc.abstractmethod
    def umount(self):
        raise NotImplementedError

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.umount()
        return False


class Daemon(abc.ABC):
    @abc.abstractmethod
    def mount(self, request: MountRequest) -> MountHandle:
        raise NotImplementedError


def nydusd_config(request: MountRequest) -> dict:
    return {
        'device': {
            'backend': request.backend_config,
            'cache': {
                'type': 'blobcache',
                'config': {
                    'work_dir': os.path.join(request.work_dir, 'cache'),
                },
            },
        },
        'mode': 'direct',
        'digest_validate': False,
        'iostats_files': False,
        'enable_xattr': True,
    }


class NydusdMount(MountHandle):
    def __init__(self, process: subprocess.Popen, mountpoint: str):
        self.process = process
        self.mountpoint = mountpoint
        self._mounted = True

    def umount(self):
        if not self._mounted:
            return
        self._mounted = False

        if os.path.ismount(self.mountpoint):
            res = subprocess.run(
                args=('umount', self.mountpoint),
                capture_output=True,
                text=True,
            )
            if res.returncode != 0:
                logger.warning(f'failed to umount {self.mountpoint}: {res.stderr}')

        if self.process.poll() is None:
            self.process.terminate()
            try:
                self.process.wait(timeout=10)
            except subprocess.TimeoutExpired:
                logger.warning(f'nydusd did not terminate - killing {self.process.pid=}')
                self.process.kill()
                self.process.wait()

        logger.debug(f'released {self.mountpoint}')


class Nydusd(Daemon):
    def __init__(
        self,
        nydusd_path: str='nydusd',
        ready_policy: oci.retry.RetryPolicy=oci.retry.RetryPolicy(attempts=60, delay=0.5),
    ):
        self.nydusd_path = nydusd_path
        self.ready_policy = ready_policy

    def mount(self, request: MountRequest) -> MountHandle:
        os.makedirs(request.work_dir, exist_ok=True)
        os.makedirs(request.mountpoint, exist_ok=True)

        config_path = os.path.join(request.work_dir, 'nydusd-config.json')
        with open(config_path, 'w') as f:
            json.dump(nydusd_config(request), f)

        argv = (
            self.nydusd_path,
            '--config', config_path,
            '--mountpoint', request.mountpoint,
            '--bootstrap', request.bootstrap_path,
            '--log-level', 'warn',
        )
        logger.debug(f'running {" ".join(argv)}')

        log_path = os.path.join(request.work_dir, 'nydusd.log')
        try:
            with open(log_path, 'w') as log_file:
                process = subprocess.Popen(
                    argv,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                )
        except OSError as oe:
            raise DaemonError(f'failed to start {self.nydusd_path}: {oe}') from oe

        handle = NydusdMount(process=process, mountpoint=request.mountpoint)
        cancel = request.cancel or oci.retry.CancelToken()

        for _ in range(self.ready_policy.attempts):
            if os.path.ismount(request.mountpoint):
                logger.info(f'nydusd mounted {request.bootstrap_path} at {request.mountpoint}')
                return handle

            if (returncode := process.poll()) is not None:
                with open(log_path) as f:
                    output = f.read()
                raise DaemonError(f'nydusd exited with {returncode=}: {output}')

            if cancel.wait(self.ready_policy.delay):
                handle.umount()
                raise oci.retry.Cancelled(f'mounting {request.mountpoint} was cancelled')

        handle.umount()
        raise DaemonError(f'nydusd did not mount {request.mountpoint} in time')
