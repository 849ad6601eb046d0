# SPDX-FileCopyrightText: 2024 SAP SE or an SAP affiliate company and Gardener contributors
#
# SPDX-License-Identifier: Apache-2.0

import logging
import os

import boto3
import botocore.exceptions

import backend
import oci.model as om
import oci.retry

logger = logging.getLogger(__name__)


def _status_code(client_error: botocore.exceptions.ClientError) -> int:
    return int(client_error.response.get('ResponseMetadata', {}).get('HTTPStatusCode', 0))


def _as_transient(error: botocore.exceptions.BotoCoreError | botocore.exceptions.ClientError):
    if isinstance(error, (
        botocore.exceptions.EndpointConnectionError,
        botocore.exceptions.ConnectionClosedError,
        botocore.exceptions.ReadTimeoutError,
        botocore.exceptions.ConnectTimeoutError,
    )):
        return oci.retry.TransientError(f's3 request failed: {error}')

    if isinstance(error, botocore.exceptions.ClientError):
        status_code = _status_code(error)
        if status_code in oci.retry.TRANSIENT_HTTP_STATUS_CODES or status_code >= 500:
            return oci.retry.TransientError(f's3 server-error: {error}')

    return error


class S3Backend(backend.Backend):
    type = backend.BackendType.S3

    def __init__(self, config: dict):
        if not config.get('bucket_name'):
            raise ValueError(f's3-backend-config requires attribute `bucket_name`: {config=}')

        self.config = config
        self.bucket_name = config['bucket_name']
        self.object_prefix = config.get('object_prefix', '')

        endpoint = config.get('endpoint')
        if endpoint and not '://' in endpoint:
            endpoint = f'{config.get("scheme", "https")}://{endpoint}'

        session = boto3.Session(
            aws_access_key_id=config.get('access_key_id') or None,
            aws_secret_access_key=config.get('access_key_secret') or None,
            region_name=config.get('region') or None,
        )
        self.s3_client = session.client(
            's3',
            endpoint_url=endpoint or None,
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
            logger.info(f'uploading {blob_id=} to s3-bucket {self.bucket_name}')
            try:
                with open(path, 'rb') as f:
                    self.s3_client.upload_fileobj(
                        f,
                        self.bucket_name,
                        self._key(blob_id),
                    )
            except (botocore.exceptions.BotoCoreError, botocore.exceptions.ClientError) as e:
                raise _as_transient(e) from e

        return self.blob_ref(blob_id=blob_id, size=size)

    def check(self, blob_id: str) -> bool:
        try:
            self.s3_client.head_object(Bucket=self.bucket_name, Key=self._key(blob_id))
            return True
        except botocore.exceptions.ClientError as ce:
            if _status_code(ce) == 404:
                return False
            raise _as_transient(ce) from ce
        except botocore.exceptions.BotoCoreError as be:
            raise _as_transient(be) from be

    def nydusd_config(self) -> dict:
        return {
            'type': 's3',
            'config': {
                key: value for key, value in self.config.items()
                if key in (
                    'endpoint',
                    'scheme',
                    'region',
                    'bucket_name',
                    'object_prefix',
                    'access_key_id',
                    'access_key_secret',
                )
            },
        }
