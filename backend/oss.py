# SPDX-FileCopyrightText: 2024 SAP SE or an SAP affiliate company and Gardener contributors
#
# SPDX-License-Identifier: Apache-2.0

import logging
import os

import oss2
import oss2.exceptions

import backend
import oci.model as om
import oci.retry

logger = logging.getLogger(__name__)


def _as_transient(oss_error: oss2.exceptions.OssError) -> Exception:
    '''
    wraps errors that are worth retrying into `oci.retry.TransientError`
    '''
    if isinstance(oss_error, oss2.exceptions.RequestError):
        return oci.retry.TransientError(f'oss request failed: {oss_error}')
    if oss_error.status in oci.retry.TRANSIENT_HTTP_STATUS_CODES or oss_error.status >= 500:
        return oci.retry.TransientError(f'oss server-error: {oss_error}')
    return oss_error


class OssBackend(backend.Backend):
    type = backend.BackendType.OSS

    def __init__(self, config: dict):
        missing = [
            attr for attr in ('endpoint', 'access_key_id', 'access_key_secret', 'bucket_name')
            if not config.get(attr)
        ]
        if missing:
            raise ValueError(f'oss-backend-config lacks required attributes: {missing=}')

        self.config = config
        self.object_prefix = config.get('object_prefix', '')
        self.bucket = oss2.Bucket(
            oss2.Auth(config['access_key_id'], config['access_key_secret']),
            config['endpoint'],
            config['bucket_name'],
        )

    def _key(self, blob_id: str) -> str:
        return self.object_prefix + blob_id

    def upload(
        self,
        blob_id: str,
        path: str | os.PathLike,
        size: int,
        force: bool=False,
    ) -> om.OciBlobRef:
        if force or not self.check(blob_id):
            logger.info(f'uploading {blob_id=} to oss-bucket {self.bucket.bucket_name}')
            try:
                oss2.resumable_upload(
                    self.bucket,
                    self._key(blob_id),
                    os.fspath(path),
                )
            except oss2.exceptions.OssError as oe:
                raise _as_transient(oe) from oe

        return self.blob_ref(blob_id=blob_id, size=size)

    def check(self, blob_id: str) -> bool:
        try:
            return self.bucket.object_exists(self._key(blob_id))
        except oss2.exceptions.OssError as oe:
            raise _as_transient(oe) from oe

    def nydusd_config(self) -> dict:
        endpoint = self.config['endpoint']
        scheme = 'http' if endpoint.startswith('http://') else 'https'

        return {
            'type': 'oss',
            'config': {
                'endpoint': endpoint.removeprefix('http://').removeprefix('https://'),
                'access_key_id': self.config['access_key_id'],
                'access_key_secret': self.config['access_key_secret'],
                'bucket_name': self.config['bucket_name'],
                'object_prefix': self.object_prefix,
                'scheme': scheme,
            },
        }
