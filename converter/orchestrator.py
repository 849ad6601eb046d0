# SPDX-FileCopyrightText: 2024 SAP SE or an SAP affiliate company and Gardener contributors
#
# SPDX-License-Identifier: Apache-2.0

import collections.abc
import concurrent.futures
import dataclasses
import logging
import os
import shutil
import threading

import backend
import converter.assembler
import converter.builder
import converter.cache
import converter.chunkdict
import converter.layer
import converter.metrics
import converter.model as cm
import converter.options
import oci
import oci.auth as oa
import oci.client as oc
import oci.merge
import oci.model as om
import oci.platform
import oci.retry
import oci.util

logger = logging.getLogger(__name__)

# insecure -> client
ClientFactory = collections.abc.Callable[[bool], oc.Client]


@dataclasses.dataclass(frozen=True)
class ConversionResult:
    target: str
    digest: str
    images: tuple[converter.assembler.AssembledImage, ...]
    index: om.OciImageManifestList | None = None
    metrics: dict | None = None


def default_client_factory(
    plain_http: bool=False,
    credentials_lookup: oa.credentials_lookup=oa.anonymous_credentials_lookup,
    cancel: oci.retry.CancelToken | None=None,
) -> ClientFactory:
    clients = {}
    lock = threading.Lock()

    def client(insecure: bool) -> oc.Client:
        with lock:
            if not insecure in clients:
                clients[insecure] = oc.Client(
                    credentials_lookup=credentials_lookup,
                    routes=oc.OciRoutes(plain_http=plain_http),
                    disable_tls_validation=insecure,
                    cancel=cancel,
                )
            return clients[insecure]

    return client


def _platform_dirname(platform: om.OciPlatform) -> str:
    return str(platform).replace('/', '-')


class Orchestrator:
    def __init__(
        self,
        options: converter.options.Options,
        builder: converter.builder.Builder | None=None,
        client_factory: ClientFactory | None=None,
        cancel: oci.retry.CancelToken | None=None,
        metrics: converter.metrics.Metrics | None=None,
    ):
        if not options.validated:
            options = options.validate()

        self.options = options
        self.builder = builder or converter.builder.NydusImageBuilder(
            builder_path=options.nydus_image,
        )
        self.cancel = cancel or oci.retry.CancelToken()
        self.client_factory = client_factory or default_client_factory(
            plain_http=options.plain_http,
            credentials_lookup=oa.docker_credentials_lookup(
                docker_cfg=options.docker_cfg,
                absent_ok=True,
            ),
            cancel=self.cancel,
        )
        self.metrics = metrics or converter.metrics.Metrics()
        self.retry_policy = options.retry_policy

        self.source_client = self.client_factory(options.source_insecure)
        self.target_client = self.client_factory(options.target_insecure)
        self.cache_client = self.client_factory(options.cache_insecure)
        self.chunk_dict_client = self.client_factory(options.chunk_dict_insecure)

        self._chunk_dicts = {}
        self._work_dirs = []
        self._chunk_dict_lock = threading.Lock()

    def _source_image(
        self,
        image_reference: om.OciImageReference,
        platform: om.OciPlatform | None,
        descriptor: om.OciBlobRef | None,
    ) -> converter.assembler.SourceImage:
        raw = self.source_client.manifest_raw(
            image_reference=image_reference,
            accept=om.MimeTypes.single_image,
        )
        manifest_bytes = raw.content
        manifest = om.as_manifest(manifest_bytes)
        if not isinstance(manifest, om.OciImageManifest):
            raise cm.ConversionError(f'{image_reference} did not yield an image-manifest')

        config = self.source_client.blob(
            image_reference=image_reference,
            digest=manifest.config.digest,
            stream=False,
        ).json()

        digest = oci.util.sha256_digest(manifest_bytes)
        if not descriptor:
            descriptor = om.OciBlobRef(
                digest=digest,
                mediaType=manifest.mediaType,
                size=len(manifest_bytes),
            )
        if not platform:
            platform = oci.platform.from_config(config)

        return converter.assembler.SourceImage(
            image_reference=image_reference.with_tag(digest),
            platform=platform,
            descriptor=descriptor,
            manifest=manifest,
            config=config,
        )

    def resolve_sources(self) -> list[converter.assembler.SourceImage]:
        '''
        returns the source-images (one per platform) to be converted, honouring the
        platform-selection
        '''
        source_ref = self.options.source_ref
        platform_filter = self.options.platform_filter()

        manifest = self.source_client.manifest(
            image_reference=source_ref,
            accept=om.MimeTypes.prefer_multiarch,
        )

        if isinstance(manifest, om.OciImageManifest):
            source = self._source_image(
                image_reference=source_ref,
                platform=None,
                descriptor=None,
            )
            if not platform_filter(source.platform):
                raise cm.ConversionError(
                    f'{source_ref} does not provide a matching platform: {source.platform}'
                )
            return [source]

        sources = []
        for entry in manifest.manifests:
            if not entry.platform or entry.platform.os == 'unknown':
                continue # e.g. attestations
            if entry.platform.has_os_feature(cm.NYDUS_OS_FEATURE):
                logger.info(f'skipping nydus-manifest {entry.digest} in source')
                continue
            if not platform_filter(entry.platform):
                continue

            sources.append(self._source_image(
                image_reference=source_ref.with_tag(entry.digest),
                platform=entry.platform,
                descriptor=om.OciBlobRef(
                    digest=entry.digest,
                    mediaType=entry.mediaType,
                    size=entry.size,
                ),
            ))

        if not sources:
            raise cm.ConversionError(f'{source_ref} does not provide any matching platform')

        return sources

    def _chunk_dict(
        self,
        platform: om.OciPlatform,
        work_dir: str,
    ) -> converter.chunkdict.ChunkDict | None:
        if not (spec := self.options.chunk_dict_spec):
            return None

        with self._chunk_dict_lock:
            key = None if spec.source is converter.chunkdict.ChunkDictSource.LOCAL else platform
            if not key in self._chunk_dicts:
                self._chunk_dicts[key] = oci.retry.retry_call(
                    lambda: converter.chunkdict.resolve(
                        spec=spec,
                        work_dir=work_dir,
                        oci_client=self.chunk_dict_client,
                        platform=platform,
                    ),
                    policy=self.retry_policy,
                    cancel=self.cancel,
                    description=f'resolve chunk-dict {spec}',
                )
            return self._chunk_dicts[key]

    def blob_backend(self) -> backend.Backend:
        return backend.new(
            backend_type=self.options.backend_type,
            config=self.options.parsed_backend_config,
            oci_client=self.target_client,
            image_reference=self.options.target_ref,
            plain_http=self.options.plain_http,
            insecure=self.options.target_insecure,
        )

    def convert_platform(
        self,
        source: converter.assembler.SourceImage,
        signature: cm.BuildSignature,
        cache: converter.cache.BuildCache | None,
        blob_backend: backend.Backend,
    ) -> converter.assembler.AssembledImage:
        work_dir = os.path.join(self.options.work_dir, _platform_dirname(source.platform))
        if os.path.exists(work_dir):
            shutil.rmtree(work_dir)
        os.makedirs(work_dir)
        self._work_dirs.append(work_dir)

        logger.info(f'converting {source.image_reference} ({source.platform})')

        chunk_dict = self._chunk_dict(
            platform=source.platform,
            work_dir=os.path.join(work_dir, 'chunk-dict'),
        )

        assembler = converter.assembler.ImageAssembler(
            target_client=self.target_client,
            target_ref=self.options.target_ref,
            blob_backend=blob_backend,
            source_client=self.source_client,
            fs_version=self.options.fs_version,
            oci_ref=self.options.oci_ref,
            with_referrer=self.options.with_referrer,
            docker2oci=self.options.docker2oci,
            force_push=self.options.backend_force_push,
            cache=cache,
            cache_client=self.cache_client,
            chunk_dict=chunk_dict,
            chunk_dict_client=self.chunk_dict_client,
            retry_policy=self.retry_policy,
            cancel=self.cancel,
            metrics=self.metrics,
            work_dir=os.path.join(work_dir, 'transfer'),
            max_workers=self.options.max_workers,
        )

        layer_converter = converter.layer.LayerConverter(
            builder=self.builder,
            signature=signature,
            source_client=self.source_client,
            work_dir=os.path.join(work_dir, 'layers'),
            cache=cache,
            cache_client=self.cache_client,
            chunk_dict=chunk_dict,
            oci_ref=self.options.oci_ref,
            blobs_in_registry=blob_backend.type is backend.BackendType.REGISTRY,
            retry_policy=self.retry_policy,
            cancel=self.cancel,
            metrics=self.metrics,
            blob_available=assembler.blob_available,
        )
        converted = layer_converter.convert(
            image_reference=source.image_reference,
            layers=source.manifest.layers,
            diff_ids=source.diff_ids,
        )

        assembled = assembler.assemble(source=source, converted=converted)
        logger.info(f'assembled nydus-image for {source.platform}: {assembled.digest}')

        return assembled

    def _put_manifest(self, image_reference: om.OciImageReference, manifest_bytes: bytes):
        oci.retry.retry_call(
            lambda: self.target_client.put_manifest(
                image_reference=image_reference,
                manifest=manifest_bytes,
            ),
            policy=self.retry_policy,
            cancel=self.cancel,
            description=f'push manifest {image_reference}',
        )

    def _replicate_source_manifest(self, source: converter.assembler.SourceImage):
        '''
        makes the (original) source-manifest available in target-repository, so it can be
        referenced from target's image-index
        '''
        target_ref = self.options.target_ref
        for blob in source.manifest.blobs():
            if self.source_client is self.target_client:
                oci.copy_blob(
                    oci_client=self.target_client,
                    src_image_reference=source.image_reference,
                    tgt_image_reference=target_ref,
                    blob=blob,
                    retry_policy=self.retry_policy,
                    cancel=self.cancel,
                )
                continue

            if self.target_client.head_blob(image_reference=target_ref, digest=blob.digest).ok:
                continue
            blob_bytes = oci.retry.retry_call(
                lambda: self.source_client.blob(
                    image_reference=source.image_reference,
                    digest=blob.digest,
                    stream=False,
                ).content,
                policy=self.retry_policy,
                cancel=self.cancel,
                description=f'pull {blob.digest}',
            )
            oci.retry.retry_call(
                lambda: self.target_client.put_blob(
                    image_reference=target_ref,
                    digest=blob.digest,
                    octets_count=len(blob_bytes),
                    data=blob_bytes,
                ),
                policy=self.retry_policy,
                cancel=self.cancel,
                description=f'push {blob.digest}',
            )

        manifest_bytes = self.source_client.manifest_raw(
            image_reference=source.image_reference,
            accept=source.descriptor.mediaType,
        ).content
        self._put_manifest(
            image_reference=target_ref.with_tag(source.descriptor.digest),
            manifest_bytes=manifest_bytes,
        )

    def _publish(
        self,
        sources: list[converter.assembler.SourceImage],
        images: list[converter.assembler.AssembledImage],
    ) -> tuple[str, om.OciImageManifestList | None]:
        target_ref = self.options.target_ref
        with_index = self.options.merge_platform or len(images) > 1

        if not with_index:
            image = images[0]
            self._put_manifest(image_reference=target_ref, manifest_bytes=image.manifest_bytes)
            logger.info(f'pushed {target_ref} ({image.digest})')
            return image.digest, None

        for image in images:
            self._put_manifest(
                image_reference=target_ref.with_tag(image.digest),
                manifest_bytes=image.manifest_bytes,
            )

        entries = []
        for source in sources:
            self._replicate_source_manifest(source)
            entries.append(om.OciImageManifestListEntry(
                digest=source.descriptor.digest,
                mediaType=source.descriptor.mediaType,
                size=source.descriptor.size,
                platform=source.platform,
            ))
        entries.extend(image.entry for image in images)

        index, digest = oci.merge.into_image_index(
            entries=entries,
            tgt_image_ref=target_ref,
            oci_client=self.target_client,
            retry_policy=self.retry_policy,
            cancel=self.cancel,
        )
        return digest, index

    def run(self) -> ConversionResult:
        options = self.options
        logger.info(f'converting {options.source} to {options.target}')

        try:
            builder_version = self.builder.version()
            signature = options.signature(builder_version=builder_version)

            cache = None
            if (cache_ref := options.cache_ref):
                cache = converter.cache.BuildCache(
                    image_reference=cache_ref,
                    version=options.build_cache_version,
                    max_records=options.build_cache_max_records,
                )
                with self.metrics.stage('cache-import'):
                    cache.import_(oci_client=self.cache_client)

            blob_backend = self.blob_backend()

            with self.metrics.stage('resolve'):
                sources = self.resolve_sources()

            images = {}
            failures = {}
            with concurrent.futures.ThreadPoolExecutor(
                max_workers=min(options.max_workers, len(sources)),
            ) as tpe:
                futures = {
                    tpe.submit(
                        self.convert_platform,
                        source=source,
                        signature=signature,
                        cache=cache,
                        blob_backend=blob_backend,
                    ): source
                    for source in sources
                }
                for future in concurrent.futures.as_completed(futures):
                    source = futures[future]
                    try:
                        images[source.platform] = future.result()
                    except Exception as e:
                        logger.error(f'conversion failed for {source.platform}: {e}')
                        failures[source.platform] = e

            if failures:
                if any(isinstance(e, oci.retry.Cancelled) for e in failures.values()):
                    raise oci.retry.Cancelled('conversion was cancelled')
                raise cm.PlatformConversionError(failures=failures)

            ordered_images = [images[source.platform] for source in sources]

            with self.metrics.stage('publish'):
                digest, index = self._publish(sources=sources, images=ordered_images)

            if cache:
                with self.metrics.stage('cache-export'):
                    cache.export(
                        oci_client=self.cache_client,
                        retry_policy=self.retry_policy,
                        cancel=self.cancel,
                    )

            metrics = self.metrics.as_dict(
                source=options.source,
                target=options.target,
                platforms=[str(source.platform) for source in sources],
            )
            if options.output_json:
                converter.metrics.write(metrics=metrics, path=options.output_json)

            logger.info(f'converted {options.source} to {options.target} ({digest})')

            return ConversionResult(
                target=options.target,
                digest=digest,
                images=tuple(ordered_images),
                index=index,
                metrics=metrics,
            )
        finally:
            for work_dir in self._work_dirs:
                shutil.rmtree(work_dir, ignore_errors=True)
