# SPDX-FileCopyrightText: 2024 SAP SE or an SAP affiliate company and Gardener contributors
#
# SPDX-License-Identifier: Apache-2.0

import logging
import os
import tempfile

import oci.client as oc
import oci.model as om
import oci.retry
import oci.util

logger = logging.getLogger(__name__)


def blob_to_file(
    oci_client: oc.Client,
    image_reference: str | om.OciImageReference,
    blob: om.OciBlobRef,
    path: str | os.PathLike,
    chunk_size: int=4 * 1024 * 1024,
) -> int:
    '''
    downloads the given blob into a file at `path`, validating size and digest. Returns the
    amount of octets written.
    '''
    res = oci_client.blob(
        image_reference=image_reference,
        digest=blob.digest,
        stream=True,
    )

    tmp_path = f'{path}.partial'
    octets_count = 0
    with open(tmp_path, 'wb') as f:
        for chunk in res.iter_content(chunk_size=chunk_size):
            f.write(chunk)
            octets_count += len(chunk)

    digest, _ = oci.util.file_digest(tmp_path)
    if digest != blob.digest:
        os.unlink(tmp_path)
        raise ValueError(f'digest mismatch for {image_reference=}: {blob.digest=} {digest=}')
    if blob.size is not None and octets_count != blob.size:
        os.unlink(tmp_path)
        raise ValueError(f'size mismatch for {blob.digest=}: {blob.size=} {octets_count=}')

    os.replace(tmp_path, path)
    return octets_count


def copy_blob(
    oci_client: oc.Client,
    src_image_reference: str | om.OciImageReference,
    tgt_image_reference: str | om.OciImageReference,
    blob: om.OciBlobRef,
    retry_policy: oci.retry.RetryPolicy=oci.retry.NO_RETRY,
    cancel: oci.retry.CancelToken=None,
) -> int:
    '''
    makes the given blob available in target-repository, preferring cross-repository-mounts
    (which do not require any blob-transfer). If mounting is not possible, the blob is streamed
    through a temporary file. Returns the amount of octets transferred (zero if blob was mounted
    or already present).
    '''
    src_image_reference = om.OciImageReference.to_image_ref(src_image_reference)
    tgt_image_reference = om.OciImageReference.to_image_ref(tgt_image_reference)

    if oci_client.head_blob(image_reference=tgt_image_reference, digest=blob.digest).ok:
        return 0

    mounted = oci.retry.retry_call(
        lambda: oci_client.mount_blob(
            image_reference=tgt_image_reference,
            digest=blob.digest,
            source_image_reference=src_image_reference,
        ),
        policy=retry_policy,
        cancel=cancel,
        description=f'mount {blob.digest}',
    )
    if mounted:
        return 0

    logger.warning(
        f'could not mount {blob.digest=} from {src_image_reference=} - falling back to copying'
    )

    with tempfile.TemporaryDirectory() as tmp_dir:
        path = os.path.join(tmp_dir, 'blob')
        octets_count = oci.retry.retry_call(
            lambda: blob_to_file(
                oci_client=oci_client,
                image_reference=src_image_reference,
                blob=blob,
                path=path,
            ),
            policy=retry_policy,
            cancel=cancel,
            description=f'download {blob.digest}',
        )
        oci.retry.retry_call(
            lambda: oci_client.put_blob(
                image_reference=tgt_image_reference,
                digest=blob.digest,
                octets_count=octets_count,
                data=path,
                force=True,
            ),
            policy=retry_policy,
            cancel=cancel,
            description=f'upload {blob.digest}',
        )

    return octets_count
