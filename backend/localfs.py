# SPDX-FileCopyrightText: 2024 SAP SE or an SAP affiliate company and Gardener contributors
#
# SPDX-License-Identifier: Apache-2.0

import logging
import os
import shutil

import backend
import oci.model as om

logger = logging.getLogger(__name__)


class LocalFsBackend(backend.Backend):
    type = backend.BackendType.LOCALFS

    def __init__(self, config: dict):
        if not (blob_dir := config.get('dir')):
            raise ValueError(f'localfs-backend requires attribute `dir`: {config=}')

        self.blob_dir = os.path.abspath(blob_dir)
        os.makedirs(self.blob_dir, exist_ok=True)

    def _path(self, blob_id: str) -> str:
        return os.path.join(self.blob_dir, blob_id)

    def upload(
        self,
        blob_id: str,
        path: str | os.PathLike,
        size: int,
        force: bool=False,
    ) -> om.OciBlobRef:
        if force or not self.check(blob_id):
            tmp_path = self._path(blob_id) + '.partial'
            shutil.copyfile(path, tmp_path)
            os.replace(tmp_path, self._path(blob_id))
            logger.debug(f'stored {blob_id=} in {self.blob_dir=}')

        return self.blob_ref(blob_id=blob_id, size=size)

    def check(self, blob_id: str) -> bool:
        return os.path.isfile(self._path(blob_id))

    def nydusd_config(self) -> dict:
        return {
            'type': 'localfs',
            'config': {
                'dir': self.blob_dir,
            },
        }
