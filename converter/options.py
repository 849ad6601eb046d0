# SPDX-FileCopyrightText: 2024 SAP SE or an SAP affiliate company and Gardener contributors
#
# SPDX-License-Identifier: Apache-2.0

import collections.abc
import dataclasses
import logging

import backend
import converter.chunkdict
import converter.model as cm
import oci.model as om
import oci.platform
import oci.retry

logger = logging.getLogger(__name__)


def _parse_size(value: int | str, name: str) -> int:
    if isinstance(value, int):
        return value
    try:
        return int(value, 0)
    except (TypeError, ValueError):
        raise cm.ConfigurationError(f'invalid {name}: {value!r}')


@dataclasses.dataclass(frozen=True)
class Options:
    '''
    options of a conversion-run. Use `validate` to obtain a checked (and completed) copy; other
    components expect validated options.
    '''
    source: str
    target: str | None = None
    target_suffix: str | None = None
    work_dir: str = './tmp'
    nydus_image: str = 'nydus-image'

    source_insecure: bool = False
    target_insecure: bool = False
    cache_insecure: bool = False
    chunk_dict_insecure: bool = False
    plain_http: bool = False
    docker_cfg: str | None = None

    backend_type: str = backend.BackendType.REGISTRY.value
    backend_config: str | None = None
    backend_config_file: str | None = None
    backend_force_push: bool = False

    build_cache: str | None = None
    build_cache_tag: str | None = None
    build_cache_version: str = 'v1'
    build_cache_max_records: int = cm.MAX_CACHE_RECORDS

    chunk_dict: str | None = None
    prefetch_patterns: str = '/'

    merge_platform: bool = False
    all_platforms: bool = False
    platforms: str | None = None
    docker2oci: bool = False

    fs_version: str = cm.FsVersion.V6.value
    fs_align_chunk: bool = False
    compressor: str = cm.Compressor.ZSTD.value
    chunk_size: int | str = cm.DEFAULT_CHUNK_SIZE
    batch_size: int | str = 0

    oci_ref: bool = False
    with_referrer: bool = False

    output_json: str | None = None
    push_retry_count: int = 3
    push_retry_delay: str = '5s'
    max_workers: int = 4

    # populated by `validate`
    parsed_backend_config: dict | None = None
    validated: bool = False

    def validate(self) -> 'Options':
        '''
        checks options for consistency, and returns a completed copy (target derived from
        target-suffix, build-cache derived from build-cache-tag, sizes parsed, ...).

        raises `ConfigurationError` for invalid or conflicting options. No network-I/O is done.
        '''
        if not self.source:
            raise cm.ConfigurationError('source must be specified')
        try:
            source_ref = om.OciImageReference(self.source)
            source_ref.name
        except ValueError as ve:
            raise cm.ConfigurationError(f'invalid source-reference {self.source}: {ve}')

        # target
        if bool(self.target) == bool(self.target_suffix):
            raise cm.ConfigurationError('exactly one of target and target-suffix must be set')
        target = self.target
        if self.target_suffix:
            try:
                target = str(source_ref.with_tag_suffix(self.target_suffix))
            except ValueError as ve:
                raise cm.ConfigurationError(f'cannot derive target from {self.source}: {ve}')

        # build-cache
        if self.build_cache and self.build_cache_tag:
            raise cm.ConfigurationError('build-cache conflicts with build-cache-tag')
        build_cache = self.build_cache
        if self.build_cache_tag:
            build_cache = str(om.OciImageReference(target).with_tag(self.build_cache_tag))
        if not 1 <= self.build_cache_max_records <= cm.MAX_CACHE_RECORDS:
            raise cm.ConfigurationError(
                f'build-cache-max-records must be within [1, {cm.MAX_CACHE_RECORDS}]:'
                f' {self.build_cache_max_records}'
            )
        if not self.build_cache_version:
            raise cm.ConfigurationError('build-cache-version must not be empty')

        # build-parameters
        try:
            cm.FsVersion(str(self.fs_version))
        except ValueError:
            raise cm.ConfigurationError(f'unsupported fs-version: {self.fs_version}')
        try:
            cm.Compressor(self.compressor)
        except ValueError:
            raise cm.ConfigurationError(f'unsupported compressor: {self.compressor}')

        chunk_size = _parse_size(self.chunk_size, 'chunk-size')
        if not (
            cm.is_power_of_two(chunk_size)
            and cm.MIN_CHUNK_SIZE <= chunk_size <= cm.MAX_CHUNK_SIZE
        ):
            raise cm.ConfigurationError(
                f'chunk-size must be a power of two within [{hex(cm.MIN_CHUNK_SIZE)},'
                f' {hex(cm.MAX_CHUNK_SIZE)}]: {hex(chunk_size)}'
            )

        batch_size = _parse_size(self.batch_size, 'batch-size')
        if batch_size and not (
            cm.is_power_of_two(batch_size)
            and cm.MIN_BATCH_SIZE <= batch_size <= cm.MAX_BATCH_SIZE
        ):
            raise cm.ConfigurationError(
                f'batch-size must be zero or a power of two within [{hex(cm.MIN_BATCH_SIZE)},'
                f' {hex(cm.MAX_BATCH_SIZE)}]: {hex(batch_size)}'
            )

        # backend
        try:
            backend_type = backend.BackendType(self.backend_type or 'registry')
        except ValueError:
            raise cm.ConfigurationError(f'unsupported backend-type: {self.backend_type}')
        try:
            parsed_backend_config = backend.parse_backend_config(
                config_json=self.backend_config,
                config_file=self.backend_config_file,
            )
        except (OSError, ValueError) as e:
            raise cm.ConfigurationError(f'invalid backend-config: {e}')
        if backend_type in backend.EXTERNAL_BACKEND_TYPES and not parsed_backend_config:
            raise cm.ConfigurationError(f'{backend_type.value}-backend requires a configuration')

        # platforms
        if self.all_platforms and self.platforms:
            raise cm.ConfigurationError('all-platforms conflicts with platform')
        platforms = self.platforms or str(oci.platform.host_platform())
        try:
            oci.platform.parse_platforms(platforms)
        except ValueError as ve:
            raise cm.ConfigurationError(str(ve))

        # reference-mode
        docker2oci = self.docker2oci
        if self.oci_ref:
            if str(self.fs_version) == cm.FsVersion.V5.value:
                raise cm.ConfigurationError('oci-ref requires fs-version 6')
            if backend_type is not backend.BackendType.REGISTRY:
                raise cm.ConfigurationError('oci-ref is only supported w/ registry-backend')
            if not docker2oci:
                logger.warning('forcing docker2oci, as oci-ref was requested')
                docker2oci = True
        if self.with_referrer and not self.oci_ref:
            raise cm.ConfigurationError('with-referrer requires oci-ref')

        # retry
        if int(self.push_retry_count) < 1:
            raise cm.ConfigurationError(
                f'push-retry-count must be at least 1: {self.push_retry_count}'
            )
        try:
            oci.retry.parse_duration(self.push_retry_delay)
        except ValueError as ve:
            raise cm.ConfigurationError(f'invalid push-retry-delay: {ve}')

        if self.chunk_dict:
            try:
                converter.chunkdict.parse_chunk_dict_args(self.chunk_dict)
            except ValueError as ve:
                raise cm.ConfigurationError(str(ve))

        if int(self.max_workers) < 1:
            raise cm.ConfigurationError(f'max-workers must be at least 1: {self.max_workers}')

        return dataclasses.replace(
            self,
            target=target,
            target_suffix=None,
            build_cache=build_cache,
            build_cache_tag=None,
            fs_version=str(self.fs_version),
            chunk_size=chunk_size,
            batch_size=batch_size,
            backend_type=backend_type.value,
            platforms=None if self.all_platforms else platforms,
            docker2oci=docker2oci,
            push_retry_count=int(self.push_retry_count),
            max_workers=int(self.max_workers),
            parsed_backend_config=parsed_backend_config,
            validated=True,
        )

    @property
    def source_ref(self) -> om.OciImageReference:
        return om.OciImageReference(self.source)

    @property
    def target_ref(self) -> om.OciImageReference:
        return om.OciImageReference(self.target)

    @property
    def cache_ref(self) -> om.OciImageReference | None:
        if not self.build_cache:
            return None
        return om.OciImageReference(self.build_cache)

    @property
    def retry_policy(self) -> oci.retry.RetryPolicy:
        return oci.retry.RetryPolicy(
            attempts=self.push_retry_count,
            delay=oci.retry.parse_duration(self.push_retry_delay),
        )

    @property
    def chunk_dict_spec(self) -> converter.chunkdict.ChunkDictSpec | None:
        if not self.chunk_dict:
            return None
        return converter.chunkdict.parse_chunk_dict_args(self.chunk_dict)

    def platform_filter(self) -> collections.abc.Callable[[om.OciPlatform], bool]:
        if self.all_platforms:
            return oci.platform.PlatformFilter.create(['*/*'])

        return oci.platform.PlatformFilter.create(
            expr.strip() for expr in self.platforms.split(',') if expr.strip()
        )

    def signature(self, builder_version: str) -> cm.BuildSignature:
        return cm.BuildSignature(
            fs_version=self.fs_version,
            compressor=self.compressor,
            chunk_size=self.chunk_size,
            batch_size=self.batch_size,
            align_chunk=self.fs_align_chunk,
            oci_ref=self.oci_ref,
            builder_version=builder_version,
            prefetch_patterns=self.prefetch_patterns,
        )
