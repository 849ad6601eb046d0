# SPDX-FileCopyrightText: 2024 SAP SE or an SAP affiliate company and Gardener contributors
#
# SPDX-License-Identifier: Apache-2.0

'''
storage-backends for nydus data-blobs.

blobs are identified by their blob-id (the hex-part of their sha256-digest). Besides the
registry (which is the default, and stores blobs alongside the image's manifest), blobs may be
stored in object-storages (`oss`, `s3`), or in a local directory (`localfs`). For the latter
kinds, nydusd needs to be configured to read blobs from the respective backend (see
`Backend.nydusd_config`).
'''

import abc
import enum
import json
import logging
import os

import oci.model as om

logger = logging.getLogger(__name__)


class BackendType(enum.Enum):
    REGISTRY = 'registry'
    OSS = 'oss'
    S3 = 's3'
    LOCALFS = 'localfs'


EXTERNAL_BACKEND_TYPES = (BackendType.OSS, BackendType.S3, BackendType.LOCALFS)


def blob_id(digest: str) -> str:
    return digest.removeprefix('sha256:')


class Backend(abc.ABC):
    type: BackendType

    @abc.abstractmethod
    def upload(
        self,
        blob_id: str,
        path: str | os.PathLike,
        size: int,
        force: bool=False,
    ) -> om.OciBlobRef:
        '''
        stores the blob read from `path` with the given blob-id. Upload is skipped if the blob is
        already present, unless `force` is set.
        '''
        raise NotImplementedError

    @abc.abstractmethod
    def check(self, blob_id: str) -> bool:
        '''
        returns whether a blob with the given id is present
        '''
        raise NotImplementedError

    @abc.abstractmethod
    def nydusd_config(self) -> dict:
        '''
        returns the backend-part of a nydusd-configuration for reading blobs from this backend
        '''
        raise NotImplementedError

    def blob_ref(self, blob_id: str, size: int) -> om.OciBlobRef:
        return om.OciBlobRef(
            digest=f'sha256:{blob_id}',
            mediaType=om.NYDUS_BLOB_MIME,
            size=size,
        )


def parse_backend_config(
    config_json: str | None=None,
    config_file: str | os.PathLike | None=None,
) -> dict | None:
    '''
    parses backend-configuration passed either inline (as JSON), or as path to a JSON-file.
    Passing both is an error.
    '''
    if config_json and config_file:
        raise ValueError('backend-config and backend-config-file must not both be set')

    if config_file:
        with open(config_file) as f:
            config_json = f.read()

    if not config_json:
        return None

    config = json.loads(config_json)
    if not isinstance(config, dict):
        raise ValueError(f'backend-config must be a JSON object: {config_json=}')

    return config


def new(
    backend_type: BackendType | str,
    config: dict | None=None,
    **kwargs,
) -> Backend:
    '''
    creates a backend of the given type. For `registry`, `oci_client` and `image_reference`
    need to be passed as keyword-arguments.
    '''
    backend_type = BackendType(backend_type)

    if backend_type is BackendType.REGISTRY:
        import backend.registry
        return backend.registry.RegistryBackend(**kwargs)

    if not config:
        raise ValueError(f'{backend_type.value} backend requires a configuration')

    if backend_type is BackendType.OSS:
        import backend.oss
        return backend.oss.OssBackend(config=config)
    elif backend_type is BackendType.S3:
        import backend.s3
        return backend.s3.S3Backend(config=config)
    elif backend_type is BackendType.LOCALFS:
        import backend.localfs
        return backend.localfs.LocalFsBackend(config=config)

    raise NotImplementedError(backend_type)
