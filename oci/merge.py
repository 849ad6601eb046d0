# SPDX-FileCopyrightText: 2024 SAP SE or an SAP affiliate company and Gardener contributors
#
# SPDX-License-Identifier: Apache-2.0

import collections.abc
import logging

import oci.client as oc
import oci.model as om
import oci.retry
import oci.util

logger = logging.getLogger(__name__)


def merge_entries(
    entries: collections.abc.Iterable[om.OciImageManifestListEntry],
    annotations: dict=None,
) -> om.OciImageManifestList:
    '''
    merges the given manifest-list-entries into an OCI Image Index. Entries are de-duplicated by
    digest (first occurrence wins), order is preserved.

    Entries may either be of Docker or OCI media types. If all entries are Docker Image Manifests,
    the resulting index will be a Docker Manifest List; otherwise an OCI Image Index. Mixing
    Docker Manifest Lists and OCI Image Manifests is not allowed (raises ValueError).
    '''
    merged = []
    seen_digests = set()
    spec_types = set()

    for entry in entries:
        if entry.digest in seen_digests:
            continue
        seen_digests.add(entry.digest)

        if entry.mediaType == om.DOCKER_MANIFEST_SCHEMA_V2_MIME:
            spec_types.add('docker')
        elif entry.mediaType == om.OCI_MANIFEST_SCHEMA_V2_MIME:
            spec_types.add('oci')
        else:
            raise ValueError(f'unexpected {entry.mediaType=} for index-entry {entry.digest=}')

        merged.append(entry)

    if not merged:
        raise ValueError('refusing to create empty image index')

    if spec_types == {'docker'}:
        media_type = om.DOCKER_MANIFEST_LIST_MIME
    else:
        media_type = om.OCI_IMAGE_INDEX_MIME

    return om.OciImageManifestList(
        manifests=merged,
        mediaType=media_type,
        annotations=dict(annotations or {}),
    )


def into_image_index(
    entries: collections.abc.Iterable[om.OciImageManifestListEntry],
    tgt_image_ref: str | om.OciImageReference,
    oci_client: oc.Client,
    retry_policy: oci.retry.RetryPolicy=oci.retry.NO_RETRY,
    cancel: oci.retry.CancelToken=None,
    extra_tags: collections.abc.Iterable[str]=None,
) -> tuple[om.OciImageManifestList, str]:
    '''
    merges the given entries (see `merge_entries`), and pushes the resulting index to
    `tgt_image_ref`. All referenced manifests are expected to already exist in the target
    repository.

    Passed `extra_tags` will be (re-)set, referring to the same resulting (target) OCI-Image, in
    the same OCI-Repository.

    returns the index and its digest.
    '''
    tgt_image_ref = om.OciImageReference.to_image_ref(tgt_image_ref)
    index = merge_entries(entries)
    index_bytes = index.as_bytes()

    tgt_refs = [tgt_image_ref]
    tgt_refs.extend(tgt_image_ref.with_tag(extra_tag) for extra_tag in extra_tags or ())

    for tgt_ref in tgt_refs:
        logger.info(f'pushing image index with {len(index.manifests)} entries to {tgt_ref}')
        oci.retry.retry_call(
            lambda: oci_client.put_manifest(
                image_reference=tgt_ref,
                manifest=index_bytes,
            ),
            policy=retry_policy,
            cancel=cancel,
            description=f'push index {tgt_ref}',
        )

    return index, oci.util.sha256_digest(index_bytes)
