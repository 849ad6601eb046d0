# SPDX-FileCopyrightText: 2024 SAP SE or an SAP affiliate company and Gardener contributors
#
# SPDX-License-Identifier: Apache-2.0

'''
registry-resident build-cache

the cache is stored as an auxiliary OCI image (the "cache image"), consisting of one bootstrap-
layer per cache-record (annotated with the record's metadata), each optionally followed by the
record's data-blob (if the blob is stored in the registry). The cache-image's manifest carries
the cache-version (`containerd.io/snapshot/nydus-cache`); caches of differing versions are
ignored.

records are kept in insertion-order; if more than `max_records` records are inserted, the
oldest records are evicted.
'''

import collections.abc
import logging
import os
import threading

import dacite
import requests

import converter.model as cm
import oci
import oci.client as oc
import oci.model as om
import oci.retry
import oci.util
import tarutil

logger = logging.getLogger(__name__)

EMPTY_CONFIG = b'{}'


class CacheIntegrityError(RuntimeError):
    pass


class RecordRing:
    '''
    bounded, ordered container of cache-records. Appending to a full ring evicts the oldest record
    (the one at the eviction-cursor).
    '''
    def __init__(self, max_records: int):
        if not 1 <= max_records <= cm.MAX_CACHE_RECORDS:
            raise ValueError(f'{max_records=} must be within [1, {cm.MAX_CACHE_RECORDS}]')

        self.max_records = max_records
        self._slots: list[cm.CacheRecord | None] = [None] * max_records
        self._cursor = 0 # next slot to write to; holds the oldest record if ring is full
        self._count = 0

    def append(self, record: cm.CacheRecord) -> cm.CacheRecord | None:
        '''
        appends the given record; returns the evicted record, if any
        '''
        evicted = None
        if self._count == self.max_records:
            evicted = self._slots[self._cursor]
        else:
            self._count += 1

        self._slots[self._cursor] = record
        self._cursor = (self._cursor + 1) % self.max_records

        return evicted

    def remove(self, record: cm.CacheRecord):
        remaining = [r for r in self if r is not record]
        if len(remaining) == self._count:
            raise KeyError(record)

        self.clear()
        for r in remaining:
            self.append(r)

    def clear(self):
        self._slots = [None] * self.max_records
        self._cursor = 0
        self._count = 0

    def __len__(self):
        return self._count

    def __iter__(self) -> collections.abc.Iterator[cm.CacheRecord]:
        '''
        iterates from oldest to newest record
        '''
        start = (self._cursor - self._count) % self.max_records
        for offset in range(self._count):
            yield self._slots[(start + offset) % self.max_records]

    def __reversed__(self) -> collections.abc.Iterator[cm.CacheRecord]:
        records = list(self)
        return reversed(records)


def _signature_digest(signature: cm.BuildSignature | str) -> str:
    if isinstance(signature, cm.BuildSignature):
        return signature.digest()
    return signature


class BuildCache:
    def __init__(
        self,
        image_reference: str | om.OciImageReference,
        version: str='v1',
        max_records: int=cm.MAX_CACHE_RECORDS,
    ):
        self.image_reference = om.OciImageReference.to_image_ref(image_reference)
        self.version = version
        self._ring = RecordRing(max_records=max_records)
        self._lock = threading.Lock()
        # digest -> local path, or image-reference of repository blob can be copied from
        self._blob_sources: dict[str, str | om.OciImageReference] = {}
        # digests of data-blobs that are stored in the registry (and thus listed in cache-image)
        self._registry_blobs: set[str] = set()

    @property
    def max_records(self) -> int:
        return self._ring.max_records

    def records(self) -> tuple[cm.CacheRecord, ...]:
        with self._lock:
            return tuple(self._ring)

    def lookup(
        self,
        layer_digest: str,
        signature: cm.BuildSignature | str,
        chain_id: str | None=None,
        chunk_dict_digest: str | None=None,
    ) -> cm.CacheRecord | None:
        signature_digest = _signature_digest(signature)

        with self._lock:
            for record in reversed(self._ring):
                if record.source_layer_digest != layer_digest:
                    continue
                if record.signature_digest != signature_digest:
                    continue
                if record.chunk_dict_digest != chunk_dict_digest:
                    continue
                if chain_id and record.source_chain_id != chain_id:
                    continue
                return record

            return None

    def insert(
        self,
        record: cm.CacheRecord,
        bootstrap_source: str | os.PathLike | om.OciImageReference | None=None,
        blob_source: str | os.PathLike | om.OciImageReference | None=None,
        blob_in_registry: bool=False,
    ):
        '''
        inserts the given record (replacing a record with equal key, if present). Sources (local
        paths, or image-references of repositories the blobs are available from) are used for
        populating the cache-repository upon `export`.
        '''
        with self._lock:
            for existing in list(self._ring):
                if existing.key == record.key:
                    self._ring.remove(existing)

            evicted = self._ring.append(record)

            if bootstrap_source:
                self._blob_sources[record.bootstrap.digest] = bootstrap_source
            if record.blob and blob_source:
                self._blob_sources[record.blob.digest] = blob_source
            if record.blob and blob_in_registry:
                self._registry_blobs.add(record.blob.digest)

        if evicted:
            logger.debug(f'evicted cache-record for {evicted.source_layer_digest=}')

    def blob_source(self, digest: str) -> str | os.PathLike | om.OciImageReference | None:
        with self._lock:
            return self._blob_sources.get(digest)

    def _parse_records(
        self,
        manifest: om.OciImageManifest,
    ) -> collections.abc.Generator[tuple[cm.CacheRecord, bool], None, None]:
        layers = list(manifest.layers)

        for idx, layer in enumerate(layers):
            annotations = layer.annotations or {}
            if annotations.get(cm.ANNOTATION_NYDUS_BLOB) == 'true':
                continue # blob-layers are consumed along w/ their bootstrap-layers
            if annotations.get(cm.ANNOTATION_NYDUS_BOOTSTRAP) != 'true':
                raise CacheIntegrityError(f'unexpected layer in cache-image: {layer.digest=}')

            try:
                source_digest = annotations[cm.ANNOTATION_SOURCE_DIGEST]
                signature_digest = annotations[cm.ANNOTATION_SIGNATURE]
                annotations[cm.ANNOTATION_UNCOMPRESSED]
            except KeyError as ke:
                raise CacheIntegrityError(
                    f'cache-layer {layer.digest=} lacks annotation {ke}'
                ) from ke

            blob = None
            blob_in_registry = False
            if (blob_digest := annotations.get(cm.ANNOTATION_BLOB_DIGEST)):
                try:
                    blob_size = int(annotations[cm.ANNOTATION_BLOB_SIZE])
                except (KeyError, ValueError) as e:
                    raise CacheIntegrityError(f'invalid blob-size for {blob_digest=}') from e

                blob = om.OciBlobRef(
                    digest=blob_digest,
                    mediaType=annotations.get(cm.ANNOTATION_BLOB_MEDIATYPE, om.NYDUS_BLOB_MIME),
                    size=blob_size,
                )
                if idx + 1 < len(layers) and layers[idx + 1].digest == blob_digest:
                    blob_in_registry = True

            bootstrap = om.OciBlobRef(
                digest=layer.digest,
                mediaType=layer.mediaType,
                size=layer.size,
                annotations={
                    cm.ANNOTATION_UNCOMPRESSED: annotations[cm.ANNOTATION_UNCOMPRESSED],
                },
            )

            yield cm.CacheRecord(
                source_layer_digest=source_digest,
                signature_digest=signature_digest,
                bootstrap=bootstrap,
                blob=blob,
                chunk_dict_digest=annotations.get(cm.ANNOTATION_CHUNK_DICT),
                source_chain_id=annotations.get(cm.ANNOTATION_SOURCE_CHAINID),
            ), blob_in_registry

    def import_(self, oci_client: oc.Client) -> int:
        '''
        reads records from cache-image. Absent, corrupt, or version-mismatched cache-images are
        treated as empty cache (cold start). Returns the number of imported records.
        '''
        try:
            manifest = oci_client.manifest(
                image_reference=self.image_reference,
                absent_ok=True,
            )
        except (
            requests.exceptions.RequestException,
            dacite.DaciteError,
            KeyError,
            TypeError,
            ValueError,
        ) as e:
            logger.warning(f'failed to read build-cache {self.image_reference} - cold start: {e}')
            return 0

        if not manifest:
            logger.info(f'build-cache {self.image_reference} does not exist yet - cold start')
            return 0

        if not isinstance(manifest, om.OciImageManifest):
            logger.warning(f'build-cache {self.image_reference} is not an image - cold start')
            return 0

        if (version := manifest.annotations.get(cm.ANNOTATION_CACHE)) != self.version:
            logger.warning(
                f'build-cache {self.image_reference} has {version=}, expected {self.version}'
                ' - cold start'
            )
            return 0

        try:
            parsed = list(self._parse_records(manifest=manifest))
        except CacheIntegrityError as cie:
            logger.warning(f'build-cache {self.image_reference} is corrupt - cold start: {cie}')
            return 0

        for record, blob_in_registry in parsed:
            self.insert(
                record=record,
                bootstrap_source=self.image_reference,
                blob_source=self.image_reference if blob_in_registry else None,
                blob_in_registry=blob_in_registry,
            )

        imported = len(self._ring)
        logger.info(f'imported {imported} record(s) from build-cache {self.image_reference}')
        return imported

    def _ensure_blob(
        self,
        oci_client: oc.Client,
        blob: om.OciBlobRef,
        retry_policy: oci.retry.RetryPolicy,
        cancel: oci.retry.CancelToken | None,
    ):
        if oci_client.head_blob(image_reference=self.image_reference, digest=blob.digest).ok:
            return

        if not (source := self._blob_sources.get(blob.digest)):
            raise CacheIntegrityError(f'no source known for {blob.digest=}')

        if isinstance(source, om.OciImageReference):
            oci.copy_blob(
                oci_client=oci_client,
                src_image_reference=source,
                tgt_image_reference=self.image_reference,
                blob=blob,
                retry_policy=retry_policy,
                cancel=cancel,
            )
            return

        oci.retry.retry_call(
            lambda: oci_client.put_blob(
                image_reference=self.image_reference,
                digest=blob.digest,
                octets_count=blob.size,
                data=source,
                force=True,
            ),
            policy=retry_policy,
            cancel=cancel,
            description=f'upload cache-blob {blob.digest}',
        )

    def manifest(
        self,
        records: collections.abc.Iterable[cm.CacheRecord]=None,
    ) -> om.OciImageManifest:
        if records is None:
            records = self.records()

        layers = []
        for record in records:
            annotations = {
                cm.ANNOTATION_NYDUS_BOOTSTRAP: 'true',
                cm.ANNOTATION_SOURCE_DIGEST: record.source_layer_digest,
                cm.ANNOTATION_SIGNATURE: record.signature_digest,
                cm.ANNOTATION_UNCOMPRESSED: record.bootstrap_diff_id,
            }
            if record.source_chain_id:
                annotations[cm.ANNOTATION_SOURCE_CHAINID] = record.source_chain_id
            if record.chunk_dict_digest:
                annotations[cm.ANNOTATION_CHUNK_DICT] = record.chunk_dict_digest
            if record.blob:
                annotations[cm.ANNOTATION_BLOB_DIGEST] = record.blob.digest
                annotations[cm.ANNOTATION_BLOB_SIZE] = str(record.blob.size)
                annotations[cm.ANNOTATION_BLOB_MEDIATYPE] = record.blob.mediaType

            layers.append(om.OciBlobRef(
                digest=record.bootstrap.digest,
                mediaType=om.OCI_LAYER_TAR_GZIP_MIME,
                size=record.bootstrap.size,
                annotations=annotations,
            ))

            if record.blob and record.blob.digest in self._registry_blobs:
                layers.append(om.OciBlobRef(
                    digest=record.blob.digest,
                    mediaType=record.blob.mediaType,
                    size=record.blob.size,
                    annotations={
                        cm.ANNOTATION_NYDUS_BLOB: 'true',
                    },
                ))

        return om.OciImageManifest(
            config=om.OciBlobRef(
                digest=om.OCI_EMPTY_JSON_DIGEST,
                mediaType=om.OCI_EMPTY_JSON_MIME,
                size=len(EMPTY_CONFIG),
            ),
            layers=layers,
            annotations={
                cm.ANNOTATION_CACHE: self.version,
            },
        )

    def export(
        self,
        oci_client: oc.Client,
        retry_policy: oci.retry.RetryPolicy=oci.retry.NO_RETRY,
        cancel: oci.retry.CancelToken | None=None,
    ) -> str:
        '''
        pushes the cache-image (all referenced blobs, followed by its manifest). Records whose
        blobs are not available any longer are dropped. Returns the manifest-digest.
        '''
        exported = []
        for record in self.records():
            try:
                self._ensure_blob(oci_client, record.bootstrap, retry_policy, cancel)
                if record.blob and record.blob.digest in self._registry_blobs:
                    self._ensure_blob(oci_client, record.blob, retry_policy, cancel)
            except CacheIntegrityError as cie:
                logger.warning(f'dropping cache-record {record.source_layer_digest=}: {cie}')
                continue
            exported.append(record)

        oci.retry.retry_call(
            lambda: oci_client.put_blob(
                image_reference=self.image_reference,
                digest=om.OCI_EMPTY_JSON_DIGEST,
                octets_count=len(EMPTY_CONFIG),
                data=EMPTY_CONFIG,
            ),
            policy=retry_policy,
            cancel=cancel,
            description='upload cache-config',
        )

        manifest_bytes = self.manifest(records=exported).as_bytes()
        oci.retry.retry_call(
            lambda: oci_client.put_manifest(
                image_reference=self.image_reference,
                manifest=manifest_bytes,
            ),
            policy=retry_policy,
            cancel=cancel,
            description=f'push build-cache {self.image_reference}',
        )
        logger.info(f'pushed {len(exported)} record(s) to build-cache {self.image_reference}')

        return oci.util.sha256_digest(manifest_bytes)

    def fetch_bootstrap(
        self,
        oci_client: oc.Client,
        record: cm.CacheRecord,
        dst_path: str | os.PathLike,
    ):
        '''
        materialises the (raw) bootstrap of the given record at `dst_path`
        '''
        source = self._blob_sources.get(record.bootstrap.digest, self.image_reference)

        if isinstance(source, om.OciImageReference):
            layer_path = f'{dst_path}.tar.gz'
            oci.blob_to_file(
                oci_client=oci_client,
                image_reference=source,
                blob=record.bootstrap,
                path=layer_path,
            )
        else:
            layer_path = source

        try:
            tarutil.extract_single_file(
                src=layer_path,
                arcname=cm.BOOTSTRAP_TAR_PATH,
                dst_path=dst_path,
            )
        except KeyError as ke:
            raise CacheIntegrityError(
                f'bootstrap-layer {record.bootstrap.digest=} lacks {cm.BOOTSTRAP_TAR_PATH}'
            ) from ke
