# SPDX-FileCopyrightText: 2024 SAP SE or an SAP affiliate company and Gardener contributors
#
# SPDX-License-Identifier: Apache-2.0

'''
assembles (and uploads the blobs of) the nydus-image for a single platform.

In full-mode, the converted data-blobs are stored in the configured backend. In reference-mode
(zero-copy), the source-layers themselves serve as data-blobs: they are cross-repository-mounted
(or copied, if mounting is not possible) into the target repository.

manifests are _not_ pushed by the assembler; this is left to the caller, which pushes manifests
only after all platforms were successfully assembled.
'''

import collections.abc
import concurrent.futures
import dataclasses
import json
import logging
import os

import backend
import converter.cache
import converter.chunkdict
import converter.layer
import converter.metrics
import converter.model as cm
import oci
import oci.client as oc
import oci.model as om
import oci.retry
import oci.util

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class SourceImage:
    '''
    a single-platform source-image

    image_reference: digest-reference of source-manifest
    descriptor: descriptor of source-manifest (as to be used in image-indices)
    '''
    image_reference: om.OciImageReference
    platform: om.OciPlatform
    descriptor: om.OciBlobRef
    manifest: om.OciImageManifest
    config: dict

    @property
    def diff_ids(self) -> list[str]:
        return list(self.config.get('rootfs', {}).get('diff_ids') or ())


@dataclasses.dataclass(frozen=True)
class AssembledImage:
    platform: om.OciPlatform
    manifest: om.OciImageManifest
    manifest_bytes: bytes
    digest: str
    entry: om.OciImageManifestListEntry
    config_bytes: bytes


class ImageAssembler:
    def __init__(
        self,
        target_client: oc.Client,
        target_ref: om.OciImageReference,
        blob_backend: backend.Backend,
        source_client: oc.Client,
        fs_version: str,
        oci_ref: bool=False,
        with_referrer: bool=False,
        docker2oci: bool=False,
        force_push: bool=False,
        cache: converter.cache.BuildCache | None=None,
        cache_client: oc.Client | None=None,
        chunk_dict: converter.chunkdict.ChunkDict | None=None,
        chunk_dict_client: oc.Client | None=None,
        retry_policy: oci.retry.RetryPolicy=oci.retry.NO_RETRY,
        cancel: oci.retry.CancelToken | None=None,
        metrics: converter.metrics.Metrics | None=None,
        work_dir: str='.',
        max_workers: int=4,
    ):
        self.target_client = target_client
        self.target_ref = om.OciImageReference.to_image_ref(target_ref)
        self.blob_backend = blob_backend
        self.source_client = source_client
        self.fs_version = fs_version
        self.oci_ref = oci_ref
        self.with_referrer = with_referrer
        self.docker2oci = docker2oci or oci_ref
        self.force_push = force_push
        self.cache = cache
        self.cache_client = cache_client or target_client
        self.chunk_dict = chunk_dict
        self.chunk_dict_client = chunk_dict_client or source_client
        self.retry_policy = retry_policy
        self.cancel = cancel
        self.metrics = metrics or converter.metrics.Metrics()
        self.work_dir = work_dir
        self.max_workers = max_workers

    @property
    def blobs_in_registry(self) -> bool:
        return self.blob_backend.type is backend.BackendType.REGISTRY

    def _retry(self, function, description: str):
        return oci.retry.retry_call(
            function,
            policy=self.retry_policy,
            cancel=self.cancel,
            description=description,
        )

    def _push_local_blob(self, blob: om.OciBlobRef, path: str | os.PathLike):
        res = self._retry(
            lambda: self.target_client.put_blob(
                image_reference=self.target_ref,
                digest=blob.digest,
                octets_count=blob.size,
                data=path,
                force=self.force_push,
            ),
            description=f'push blob {blob.digest}',
        )
        if res is not None:
            self.metrics.incr('pushed_bytes', blob.size)

    def _copy_remote_blob(
        self,
        blob: om.OciBlobRef,
        src_ref: om.OciImageReference,
        src_client: oc.Client,
    ):
        if src_ref.netloc == self.target_ref.netloc:
            # same registry: cross-repository-mount is possible
            octets_count = oci.copy_blob(
                oci_client=self.target_client,
                src_image_reference=src_ref,
                tgt_image_reference=self.target_ref,
                blob=blob,
                retry_policy=self.retry_policy,
                cancel=self.cancel,
            )
            self.metrics.incr('pushed_bytes', octets_count)
            return

        # different registries: transfer through local file
        if self.target_client.head_blob(image_reference=self.target_ref, digest=blob.digest).ok:
            return

        tmp_path = os.path.join(
            os.path.abspath(self.work_dir),
            f'{backend.blob_id(blob.digest)}.transfer',
        )
        try:
            self._retry(
                lambda: oci.blob_to_file(
                    oci_client=src_client,
                    image_reference=src_ref,
                    blob=blob,
                    path=tmp_path,
                ),
                description=f'pull blob {blob.digest}',
            )
            self._push_local_blob(blob=blob, path=tmp_path)
        finally:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)

    def _upload(self, blob: om.OciBlobRef, path: str | os.PathLike):
        blob_id = backend.blob_id(blob.digest)
        self._retry(
            lambda: self.blob_backend.upload(
                blob_id=blob_id,
                path=path,
                size=blob.size,
                force=self.force_push,
            ),
            description=f'upload blob {blob_id} to {self.blob_backend.type.value}-backend',
        )
        self.metrics.incr('pushed_bytes', blob.size)

    def _in_backend(self, blob: om.OciBlobRef) -> bool:
        blob_id = backend.blob_id(blob.digest)
        return self._retry(
            lambda: self.blob_backend.check(blob_id),
            description=f'check blob {blob_id}',
        )

    def _local_source(self, blob: om.OciBlobRef) -> str | None:
        source = self.cache.blob_source(blob.digest) if self.cache else None
        if source and not isinstance(source, om.OciImageReference) and os.path.isfile(source):
            return source
        return None

    def blob_available(self, blob: om.OciBlobRef) -> bool:
        '''
        returns whether the given data-blob of a cache-record can be provided to the target
        without rebuilding it. This is the case if it was built earlier in this run, if it is
        contained in the cache-image, or if it is already present in the blob-backend.
        '''
        if self.oci_ref:
            # source-layers are copied from the source-repository
            return True

        if self._local_source(blob):
            return True

        source = self.cache.blob_source(blob.digest) if self.cache else None
        if self.blobs_in_registry and isinstance(source, om.OciImageReference):
            if self._retry(
                lambda: self.cache_client.head_blob(
                    image_reference=source,
                    digest=blob.digest,
                ).ok,
                description=f'check cached blob {blob.digest}',
            ):
                return True

        return self._in_backend(blob)

    def _provide_cached(self, blob: om.OciBlobRef, local_path: str | None):
        '''
        makes the given blob (which was produced by the builder, either in this run, or a previous
        one) available in target-repository
        '''
        if local_path or (local_path := self._local_source(blob)):
            self._upload(blob=blob, path=local_path)
            return

        source = self.cache.blob_source(blob.digest) if self.cache else None
        if isinstance(source, om.OciImageReference):
            self._copy_remote_blob(blob=blob, src_ref=source, src_client=self.cache_client)
        elif not self._in_backend(blob):
            raise cm.ConversionError(f'no source for {blob.digest=}')

    def _provide_external(self, blob: om.OciBlobRef, local_path: str | None):
        if local_path or (local_path := self._local_source(blob)):
            self._upload(blob=blob, path=local_path)
            return

        if not self._in_backend(blob):
            raise cm.ConversionError(
                f'cached blob {blob.digest} is missing from {self.blob_backend.type.value}-backend'
            )

    def _layer_mimetype(self, source: SourceImage) -> str:
        if self.docker2oci or not om.is_docker_mimetype(source.manifest.mediaType):
            return om.OCI_LAYER_TAR_GZIP_MIME
        return om.DOCKER_LAYER_TAR_GZIP_MIME

    def _blob_layers(
        self,
        source: SourceImage,
        converted: collections.abc.Sequence[converter.layer.ConvertedLayer],
    ) -> tuple[list[om.OciBlobRef], list[str], list[str], list[collections.abc.Callable]]:
        '''
        returns (layers, diff-ids, blob-ids, uploads)
        '''
        layers = []
        diff_ids = []
        blob_ids = []
        uploads = []

        if self.chunk_dict and self.chunk_dict.blobs and self.blobs_in_registry:
            for dict_blob_id, dict_blob in self.chunk_dict.blobs.items():
                blob_ids.append(dict_blob_id)
                layers.append(om.OciBlobRef(
                    digest=dict_blob.digest,
                    mediaType=om.NYDUS_BLOB_MIME,
                    size=dict_blob.size,
                    annotations={cm.ANNOTATION_NYDUS_BLOB: 'true'},
                ))
                diff_ids.append(dict_blob.digest)
                uploads.append(lambda dict_blob=dict_blob: self._copy_remote_blob(
                    blob=dict_blob,
                    src_ref=self.chunk_dict.image_reference,
                    src_client=self.chunk_dict_client,
                ))

        for idx, layer in enumerate(converted):
            if not (blob := layer.record.blob):
                continue
            blob_id = backend.blob_id(blob.digest)
            if blob_id in blob_ids:
                continue
            blob_ids.append(blob_id)

            if self.oci_ref:
                layers.append(om.OciBlobRef(
                    digest=blob.digest,
                    mediaType=blob.mediaType,
                    size=blob.size,
                    annotations={cm.ANNOTATION_REF_LAYER: blob.digest},
                ))
                diff_ids.append(source.diff_ids[idx])
                uploads.append(lambda blob=blob: self._copy_remote_blob(
                    blob=blob,
                    src_ref=source.image_reference,
                    src_client=self.source_client,
                ))
            elif self.blobs_in_registry:
                layers.append(om.OciBlobRef(
                    digest=blob.digest,
                    mediaType=om.NYDUS_BLOB_MIME,
                    size=blob.size,
                    annotations={cm.ANNOTATION_NYDUS_BLOB: 'true'},
                ))
                diff_ids.append(blob.digest)
                uploads.append(lambda blob=blob, path=layer.blob_path: self._provide_cached(
                    blob=blob,
                    local_path=path,
                ))
            else:
                uploads.append(lambda blob=blob, path=layer.blob_path: self._provide_external(
                    blob=blob,
                    local_path=path,
                ))

        return layers, diff_ids, blob_ids, uploads

    def assemble(
        self,
        source: SourceImage,
        converted: collections.abc.Sequence[converter.layer.ConvertedLayer],
    ) -> AssembledImage:
        if not converted:
            raise cm.ConversionError(f'{source.image_reference} has no layers')

        os.makedirs(self.work_dir, exist_ok=True)

        layers, diff_ids, blob_ids, uploads = self._blob_layers(
            source=source,
            converted=converted,
        )

        last = converted[-1]
        bootstrap = last.record.bootstrap
        uploads.append(lambda: self._provide_cached(
            blob=bootstrap,
            local_path=last.bootstrap_layer_path,
        ))

        with self.metrics.stage('push'):
            with concurrent.futures.ThreadPoolExecutor(max_workers=self.max_workers) as tpe:
                futures = [tpe.submit(upload) for upload in uploads]
                for future in concurrent.futures.as_completed(futures):
                    # re-raise first error
                    future.result()

        layers.append(om.OciBlobRef(
            digest=bootstrap.digest,
            mediaType=self._layer_mimetype(source),
            size=bootstrap.size,
            annotations={
                cm.ANNOTATION_NYDUS_BOOTSTRAP: 'true',
                cm.ANNOTATION_FS_VERSION: self.fs_version,
                cm.ANNOTATION_REFERENCE_BLOB_IDS: json.dumps(blob_ids),
            },
        ))
        diff_ids.append(last.record.bootstrap_diff_id)

        config = json.loads(json.dumps(source.config))
        config.setdefault('rootfs', {})['type'] = 'layers'
        config['rootfs']['diff_ids'] = diff_ids
        config_bytes = json.dumps(config).encode('utf-8')

        if self.docker2oci:
            config_mimetype = om.OCI_IMAGE_CONFIG_MIME
            manifest_mimetype = om.OCI_MANIFEST_SCHEMA_V2_MIME
        else:
            config_mimetype = source.manifest.config.mediaType
            manifest_mimetype = source.manifest.mediaType

        config_ref = om.OciBlobRef(
            digest=oci.util.sha256_digest(config_bytes),
            mediaType=config_mimetype,
            size=len(config_bytes),
        )
        self._retry(
            lambda: self.target_client.put_blob(
                image_reference=self.target_ref,
                digest=config_ref.digest,
                octets_count=config_ref.size,
                data=config_bytes,
                force=self.force_push,
            ),
            description='push config',
        )

        subject = None
        if self.with_referrer:
            subject = om.OciBlobRef(
                digest=source.descriptor.digest,
                mediaType=source.descriptor.mediaType,
                size=source.descriptor.size,
            )

        manifest = om.OciImageManifest(
            config=config_ref,
            layers=layers,
            mediaType=manifest_mimetype,
            subject=subject,
        )
        manifest_bytes = manifest.as_bytes()
        digest = oci.util.sha256_digest(manifest_bytes)

        platform = dataclasses.replace(
            source.platform,
            os_features=tuple(source.platform.os_features or ()) + (cm.NYDUS_OS_FEATURE,),
        )

        return AssembledImage(
            platform=source.platform,
            manifest=manifest,
            manifest_bytes=manifest_bytes,
            digest=digest,
            entry=om.OciImageManifestListEntry(
                digest=digest,
                mediaType=manifest_mimetype,
                size=len(manifest_bytes),
                platform=platform,
            ),
            config_bytes=config_bytes,
        )
