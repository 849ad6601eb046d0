# SPDX-FileCopyrightText: 2024 SAP SE or an SAP affiliate company and Gardener contributors
#
# SPDX-License-Identifier: Apache-2.0

import collections.abc
import dataclasses
import logging
import os

import backend
import converter.builder
import converter.cache
import converter.chunkdict
import converter.metrics
import converter.model as cm
import oci
import oci.client as oc
import oci.model as om
import oci.retry
import tarutil

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class ConvertedLayer:
    '''
    bootstrap_layer_path: local path of bootstrap-layer (tar+gzip); only set if built in this run
    blob_path: local path of data-blob; only set if built in this run (and not in reference-mode)
    '''
    source: om.OciBlobRef
    record: cm.CacheRecord
    cache_hit: bool
    bootstrap_layer_path: str | None = None
    blob_path: str | None = None


class LayerConverter:
    '''
    converts the layers of a single source-image (i.e. of one platform) into a chain of nydus
    bootstraps (and data-blobs), consulting the build-cache
    '''
    def __init__(
        self,
        builder: converter.builder.Builder,
        signature: cm.BuildSignature,
        source_client: oc.Client,
        work_dir: str,
        cache: converter.cache.BuildCache | None=None,
        cache_client: oc.Client | None=None,
        chunk_dict: converter.chunkdict.ChunkDict | None=None,
        oci_ref: bool=False,
        blobs_in_registry: bool=True,
        retry_policy: oci.retry.RetryPolicy=oci.retry.NO_RETRY,
        cancel: oci.retry.CancelToken | None=None,
        metrics: converter.metrics.Metrics | None=None,
        blob_available: collections.abc.Callable[[om.OciBlobRef], bool] | None=None,
    ):
        self.builder = builder
        self.signature = signature
        self.signature_digest = signature.digest()
        self.source_client = source_client
        self.work_dir = work_dir
        self.cache = cache
        self.cache_client = cache_client or source_client
        self.chunk_dict = chunk_dict
        self.oci_ref = oci_ref
        self.blobs_in_registry = blobs_in_registry
        self.retry_policy = retry_policy
        self.cancel = cancel
        self.metrics = metrics or converter.metrics.Metrics()
        self.blob_available = blob_available

    def _path(self, *parts) -> str:
        return os.path.join(self.work_dir, *parts)

    def _lookup(self, layer: om.OciBlobRef, chain_id: str) -> cm.CacheRecord | None:
        if not self.cache:
            return None

        record = self.cache.lookup(
            layer_digest=layer.digest,
            signature=self.signature_digest,
            chain_id=chain_id,
            chunk_dict_digest=self.chunk_dict.digest if self.chunk_dict else None,
        )
        if record and record.blob and self.blob_available and not self.blob_available(record.blob):
            logger.warning(
                f'blob {record.blob.digest} of cache-record for {layer.digest=} is unavailable, '
                'will rebuild'
            )
            record = None

        if record:
            self.metrics.incr('cache_hits')
            logger.info(f'cache hit for {layer.digest=}')
        else:
            self.metrics.incr('cache_misses')

        return record

    def _materialise_bootstrap(self, converted: ConvertedLayer, idx: int) -> str:
        '''
        returns path to the raw bootstrap of the given converted layer (retrieving it from
        build-cache, if the layer was not built in this run)
        '''
        bootstrap_path = self._path(f'{idx}.boot')
        if os.path.isfile(bootstrap_path):
            return bootstrap_path

        try:
            if converted.bootstrap_layer_path:
                tarutil.extract_single_file(
                    src=converted.bootstrap_layer_path,
                    arcname=cm.BOOTSTRAP_TAR_PATH,
                    dst_path=bootstrap_path,
                )
            elif self.cache:
                oci.retry.retry_call(
                    lambda: self.cache.fetch_bootstrap(
                        oci_client=self.cache_client,
                        record=converted.record,
                        dst_path=bootstrap_path,
                    ),
                    policy=self.retry_policy,
                    cancel=self.cancel,
                    description=f'fetch cached bootstrap {converted.record.bootstrap.digest}',
                )
            else:
                raise cm.ConversionError('no source for parent-bootstrap')
        except (KeyError, converter.cache.CacheIntegrityError) as e:
            raise cm.ConversionError(
                f'parent-bootstrap of {converted.source.digest=} is unavailable: {e}'
            ) from e

        return bootstrap_path

    def _download_layer(
        self,
        image_reference: om.OciImageReference,
        layer: om.OciBlobRef,
    ) -> tuple[str, converter.builder.SourceType]:
        if layer.mediaType == om.OCI_LAYER_TAR_ZSTD_MIME:
            raise cm.ConversionError(f'zstd-compressed source-layers are unsupported: {layer}')

        path = self._path('layers', backend.blob_id(layer.digest))
        os.makedirs(os.path.dirname(path), exist_ok=True)

        with self.metrics.stage('pull'):
            octets_count = oci.retry.retry_call(
                lambda: oci.blob_to_file(
                    oci_client=self.source_client,
                    image_reference=image_reference,
                    blob=layer,
                    path=path,
                ),
                policy=self.retry_policy,
                cancel=self.cancel,
                description=f'pull layer {layer.digest}',
            )
        self.metrics.incr('pulled_bytes', octets_count)

        if tarutil.is_gzip(path):
            return path, converter.builder.SourceType.TARGZ
        return path, converter.builder.SourceType.TAR

    def _build(
        self,
        idx: int,
        image_reference: om.OciImageReference,
        layer: om.OciBlobRef,
        chain_id: str,
        parent_bootstrap_path: str | None,
    ) -> ConvertedLayer:
        source_path, source_type = self._download_layer(
            image_reference=image_reference,
            layer=layer,
        )

        if self.oci_ref:
            blob_path = None
        else:
            blob_path = self._path(f'{idx}.blob')

        request = converter.builder.BuildRequest(
            source_path=source_path,
            source_type=source_type,
            bootstrap_path=self._path(f'{idx}.boot'),
            blob_path=blob_path,
            output_json_path=self._path(f'{idx}.output.json'),
            fs_version=self.signature.fs_version,
            compressor=self.signature.compressor,
            chunk_size=self.signature.chunk_size,
            batch_size=self.signature.batch_size,
            align_chunk=self.signature.align_chunk,
            oci_ref=self.oci_ref,
            source_blob_id=backend.blob_id(layer.digest),
            parent_bootstrap_path=parent_bootstrap_path,
            chunk_dict_path=self.chunk_dict.path if self.chunk_dict else None,
            prefetch_patterns=self.signature.prefetch_patterns,
        )

        logger.info(f'building nydus-layer for {layer.digest=}')
        self.metrics.incr('builder_invocations')
        with self.metrics.stage('build'):
            result = self.builder.build(request)

        os.unlink(source_path)

        bootstrap_layer_path = self._path(f'{idx}.bootstrap.tar.gz')
        digest, diff_id, size = tarutil.pack_single_file(
            src_path=result.bootstrap_path,
            dst_path=bootstrap_layer_path,
            arcname=cm.BOOTSTRAP_TAR_PATH,
        )
        bootstrap = om.OciBlobRef(
            digest=digest,
            mediaType=om.OCI_LAYER_TAR_GZIP_MIME,
            size=size,
            annotations={
                cm.ANNOTATION_UNCOMPRESSED: diff_id,
            },
        )

        if self.oci_ref:
            blob = om.OciBlobRef(
                digest=layer.digest,
                mediaType=om.to_oci_mimetype(layer.mediaType),
                size=layer.size,
            )
        elif result.blob_digest:
            blob = om.OciBlobRef(
                digest=result.blob_digest,
                mediaType=om.NYDUS_BLOB_MIME,
                size=result.blob_size,
            )
        else:
            blob = None

        record = cm.CacheRecord(
            source_layer_digest=layer.digest,
            signature_digest=self.signature_digest,
            bootstrap=bootstrap,
            blob=blob,
            chunk_dict_digest=self.chunk_dict.digest if self.chunk_dict else None,
            source_chain_id=chain_id,
        )

        if self.cache:
            self.cache.insert(
                record=record,
                bootstrap_source=bootstrap_layer_path,
                blob_source=result.blob_path,
                blob_in_registry=self.blobs_in_registry and not self.oci_ref,
            )

        return ConvertedLayer(
            source=layer,
            record=record,
            cache_hit=False,
            bootstrap_layer_path=bootstrap_layer_path,
            blob_path=result.blob_path,
        )

    def convert(
        self,
        image_reference: str | om.OciImageReference,
        layers: collections.abc.Sequence[om.OciBlobRef],
        diff_ids: collections.abc.Sequence[str],
    ) -> list[ConvertedLayer]:
        '''
        converts the given layers (in order). Layers are converted strictly sequentially, as
        each layer's bootstrap is built on top of its predecessor's.
        '''
        image_reference = om.OciImageReference.to_image_ref(image_reference)
        if len(layers) != len(diff_ids):
            raise cm.ConversionError(
                f'{image_reference}: {len(layers)=} does not match {len(diff_ids)=}'
            )

        os.makedirs(self.work_dir, exist_ok=True)
        converted: list[ConvertedLayer] = []

        for idx, (layer, chain_id) in enumerate(zip(layers, cm.chain_ids(diff_ids))):
            if self.cancel:
                self.cancel.raise_if_cancelled()

            if (record := self._lookup(layer=layer, chain_id=chain_id)):
                converted.append(ConvertedLayer(
                    source=layer,
                    record=record,
                    cache_hit=True,
                ))
                continue

            if converted:
                parent_bootstrap_path = self._materialise_bootstrap(
                    converted=converted[-1],
                    idx=idx - 1,
                )
            else:
                parent_bootstrap_path = None

            converted.append(self._build(
                idx=idx,
                image_reference=image_reference,
                layer=layer,
                chain_id=chain_id,
                parent_bootstrap_path=parent_bootstrap_path,
            ))

        return converted
