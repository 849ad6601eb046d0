# SPDX-FileCopyrightText: 2024 SAP SE or an SAP affiliate company and Gardener contributors
#
# SPDX-License-Identifier: Apache-2.0

import logging
import os

import backend
import oci.client as oc
import oci.model as om

logger = logging.getLogger(__name__)


class RegistryBackend(backend.Backend):
    '''
    stores blobs in the OCI repository of the given image-reference
    '''
    type = backend.BackendType.REGISTRY

    def __init__(
        self,
        oci_client: oc.Client,
        image_reference: str | om.OciImageReference,
        plain_http: bool=False,
        insecure: bool=False,
    ):
        self.oci_client = oci_client
        self.image_reference = om.OciImageReference.to_image_ref(image_reference)
        self.plain_http = plain_http
        self.insecure = insecure

    def upload(
        self,
        blob_id: str,
        path: str | os.PathLike,
        size: int,
        force: bool=False,
    ) -> om.OciBlobRef:
        self.oci_client.put_blob(
            image_reference=self.image_reference,
            digest=f'sha256:{blob_id}',
            octets_count=size,
            data=path,
            force=force,
        )

        return self.blob_ref(blob_id=blob_id, size=size)

    def check(self, blob_id: str) -> bool:
        return self.oci_client.head_blob(
            image_reference=self.image_reference,
            digest=f'sha256:{blob_id}',
        ).ok

    def nydusd_config(self) -> dict:
        return {
            'type': 'registry',
            'config': {
                'scheme': 'http' if self.plain_http else 'https',
                'host': self.image_reference.netloc,
                'repo': self.image_reference.name,
                'skip_verify': self.insecure,
                'timeout': 30,
                'connect_timeout': 10,
                'retry_limit': 2,
            },
        }
