# SPDX-FileCopyrightText: 2024 SAP SE or an SAP affiliate company and Gardener contributors
#
# SPDX-License-Identifier: Apache-2.0

import abc
import dataclasses
import enum
import json
import logging
import os
import subprocess

import converter.model as cm
import oci.util

logger = logging.getLogger(__name__)


class SourceType(enum.Enum):
    TAR = 'tar'
    TARGZ = 'targz'


@dataclasses.dataclass(frozen=True)
class BuildRequest:
    '''
    parameters for converting a single layer. In reference-mode (`oci_ref`), no separate data-
    blob is produced; the bootstrap instead refers to the source-layer (by `source_blob_id`).
    '''
    source_path: str
    source_type: SourceType
    bootstrap_path: str
    blob_path: str | None
    output_json_path: str
    fs_version: str = cm.FsVersion.V6.value
    compressor: str = cm.Compressor.ZSTD.value
    chunk_size: int = cm.DEFAULT_CHUNK_SIZE
    batch_size: int = 0
    align_chunk: bool = False
    oci_ref: bool = False
    source_blob_id: str | None = None
    parent_bootstrap_path: str | None = None
    chunk_dict_path: str | None = None
    prefetch_patterns: str | None = None


@dataclasses.dataclass(frozen=True)
class BuildResult:
    bootstrap_path: str
    blob_path: str | None = None
    blob_digest: str | None = None
    blob_size: int = 0
    # ids of all blobs referenced by the bootstrap (including parents' and chunk-dict's blobs)
    blob_ids: tuple[str, ...] = ()


class Builder(abc.ABC):
    '''
    capability of converting single (tar-)layers into a pair of nydus-bootstrap and -blob
    '''
    @abc.abstractmethod
    def build(self, request: BuildRequest) -> BuildResult:
        raise NotImplementedError

    @abc.abstractmethod
    def version(self) -> str:
        raise NotImplementedError


def build_argv(
    request: BuildRequest,
    builder_path: str='nydus-image',
) -> tuple[str, ...]:
    argv = [
        builder_path,
        'create',
        '--log-level', 'warn',
        '--bootstrap', request.bootstrap_path,
        '--output-json', request.output_json_path,
        '--whiteout-spec', 'oci',
        '--fs-version', request.fs_version,
        '--compressor', request.compressor,
        '--chunk-size', hex(request.chunk_size),
    ]

    if request.batch_size:
        argv.extend(('--batch-size', hex(request.batch_size)))
    if request.align_chunk:
        argv.append('--aligned-chunk')
    if request.chunk_dict_path:
        argv.extend(('--chunk-dict', f'bootstrap={request.chunk_dict_path}'))
    if request.parent_bootstrap_path:
        argv.extend(('--parent-bootstrap', request.parent_bootstrap_path))
    if request.prefetch_patterns:
        argv.extend(('--prefetch-policy', 'fs'))

    if request.oci_ref:
        if request.source_type is not SourceType.TARGZ:
            raise cm.BuilderError('reference-mode requires gzip-compressed source-layers')
        argv.extend((
            '--type', 'targz-ref',
            '--blob-inline-meta',
            '--blob-id', request.source_blob_id,
        ))
    elif request.source_type is SourceType.TARGZ:
        argv.extend(('--type', 'targz-rafs', '--blob', request.blob_path))
    else:
        argv.extend(('--type', 'tar-rafs', '--blob', request.blob_path))

    argv.append(request.source_path)

    return tuple(argv)


class NydusImageBuilder(Builder):
    def __init__(
        self,
        builder_path: str='nydus-image',
        env: dict | None=None,
    ):
        self.builder_path = builder_path
        self.env = env
        self._version = None

    def version(self) -> str:
        if self._version:
            return self._version

        try:
            res = subprocess.run(
                args=(self.builder_path, '--version'),
                capture_output=True,
                text=True,
                check=True,
                env=self.env,
            )
        except (OSError, subprocess.CalledProcessError) as e:
            raise cm.BuilderError(f'failed to determine version of {self.builder_path}: {e}') from e

        for line in res.stdout.splitlines():
            if line.strip().lower().startswith('version:'):
                self._version = line.split(':', 1)[1].strip()
                break
        else:
            self._version = res.stdout.strip()

        return self._version

    def build(self, request: BuildRequest) -> BuildResult:
        argv = build_argv(request=request, builder_path=self.builder_path)
        logger.debug(f'running {" ".join(argv)}')

        try:
            res = subprocess.run(
                args=argv,
                input=request.prefetch_patterns or '',
                capture_output=True,
                text=True,
                env=self.env,
            )
        except OSError as oe:
            raise cm.BuilderError(f'failed to run {self.builder_path}: {oe}') from oe

        if res.returncode != 0:
            logger.error(f'{self.builder_path} failed: {res.stderr}')
            raise cm.BuilderError(
                f'{self.builder_path} exited with {res.returncode=}',
                returncode=res.returncode,
                stderr=res.stderr,
            )

        return read_build_result(request=request)


def read_build_result(request: BuildRequest) -> BuildResult:
    '''
    validates and collects the outputs written by the builder for the given request
    '''
    if not os.path.isfile(request.bootstrap_path):
        raise cm.BuilderError(f'builder did not write bootstrap to {request.bootstrap_path}')

    try:
        with open(request.output_json_path) as f:
            output = json.load(f)
        blob_ids = tuple(output.get('blobs') or ())
    except (OSError, ValueError, AttributeError) as e:
        raise cm.BuilderError(f'malformed builder-output {request.output_json_path}: {e}') from e

    if request.oci_ref or not request.blob_path or not os.path.isfile(request.blob_path):
        return BuildResult(
            bootstrap_path=request.bootstrap_path,
            blob_ids=blob_ids,
        )

    blob_digest, blob_size = oci.util.file_digest(request.blob_path)
    if not blob_size:
        # layers w/o regular-file-contents yield empty blobs
        return BuildResult(
            bootstrap_path=request.bootstrap_path,
            blob_ids=blob_ids,
        )

    return BuildResult(
        bootstrap_path=request.bootstrap_path,
        blob_path=request.blob_path,
        blob_digest=blob_digest,
        blob_size=blob_size,
        blob_ids=blob_ids,
    )
