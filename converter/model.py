# SPDX-FileCopyrightText: 2024 SAP SE or an SAP affiliate company and Gardener contributors
#
# SPDX-License-Identifier: Apache-2.0

import collections.abc
import dataclasses
import enum
import hashlib
import json

import oci.model as om

# manifest-/layer-annotations understood by nydus-snapshotter
ANNOTATION_NYDUS_BLOB = 'containerd.io/snapshot/nydus-blob'
ANNOTATION_NYDUS_BOOTSTRAP = 'containerd.io/snapshot/nydus-bootstrap'
ANNOTATION_FS_VERSION = 'containerd.io/snapshot/nydus-fs-version'
ANNOTATION_REFERENCE_BLOB_IDS = 'containerd.io/snapshot/nydus-reference-blob-ids'
ANNOTATION_REF_LAYER = 'containerd.io/snapshot/nydus-ref-layer'
ANNOTATION_UNCOMPRESSED = 'containerd.io/uncompressed'

# build-cache annotations
ANNOTATION_CACHE = 'containerd.io/snapshot/nydus-cache'
ANNOTATION_SOURCE_DIGEST = 'containerd.io/snapshot/nydus-source-digest'
ANNOTATION_SOURCE_CHAINID = 'containerd.io/snapshot/nydus-source-chainid'
ANNOTATION_SIGNATURE = 'containerd.io/snapshot/nydus-build-signature'
ANNOTATION_BLOB_DIGEST = 'containerd.io/snapshot/nydus-blob-digest'
ANNOTATION_BLOB_SIZE = 'containerd.io/snapshot/nydus-blob-size'
ANNOTATION_BLOB_MEDIATYPE = 'containerd.io/snapshot/nydus-blob-mediatype'
ANNOTATION_CHUNK_DICT = 'containerd.io/snapshot/nydus-chunk-dict'

NYDUS_OS_FEATURE = 'nydus.remoteimage.v1'

# path of bootstrap within bootstrap-layer-tar
BOOTSTRAP_TAR_PATH = 'image/image.boot'

MAX_CACHE_RECORDS = 200

MIN_CHUNK_SIZE = 0x1000
MAX_CHUNK_SIZE = 0x10000000
DEFAULT_CHUNK_SIZE = 0x100000
MIN_BATCH_SIZE = 0x1000
MAX_BATCH_SIZE = 0x1000000


class FsVersion(enum.Enum):
    V5 = '5'
    V6 = '6'


class Compressor(enum.Enum):
    NONE = 'none'
    LZ4_BLOCK = 'lz4_block'
    ZSTD = 'zstd'


class ConfigurationError(ValueError):
    '''
    raised for invalid or conflicting options; always detected before any I/O
    '''
    pass


class BuilderError(RuntimeError):
    '''
    raised if the external builder failed (non-zero exit, or missing/malformed output). Never
    retried.
    '''
    def __init__(self, msg: str, returncode: int | None=None, stderr: str | None=None):
        super().__init__(msg)
        self.returncode = returncode
        self.stderr = stderr


class ConversionError(RuntimeError):
    pass


class PlatformConversionError(RuntimeError):
    '''
    aggregates failures of individual platforms of a (multi-platform-)conversion
    '''
    def __init__(self, failures: dict[om.OciPlatform, BaseException]):
        self.failures = failures
        details = '; '.join(
            f'{platform}: {error}' for platform, error in failures.items()
        )
        super().__init__(f'conversion failed for {len(failures)} platform(s): {details}')


def is_power_of_two(value: int) -> bool:
    return value > 0 and value & (value - 1) == 0


def chain_ids(diff_ids: collections.abc.Iterable[str]) -> list[str]:
    '''
    calculates chain-ids as defined by OCI image-spec:

    ChainID(L0) = DiffID(L0)
    ChainID(L0|...|Ln) = Digest(ChainID(L0|...|Ln-1) + " " + DiffID(Ln))
    '''
    result = []
    for diff_id in diff_ids:
        if not result:
            result.append(diff_id)
            continue
        parent = result[-1]
        result.append(
            f'sha256:{hashlib.sha256(f"{parent} {diff_id}".encode("utf-8")).hexdigest()}'
        )

    return result


@dataclasses.dataclass(frozen=True)
class BuildSignature:
    '''
    build-parameters that affect the builder's output. Conversions of the same source-layer with
    equal signatures are considered to be equivalent (and are thus served from build-cache).
    '''
    fs_version: str
    compressor: str
    chunk_size: int
    batch_size: int
    align_chunk: bool
    oci_ref: bool
    builder_version: str
    prefetch_patterns: str = '/'

    def canonical_json(self) -> bytes:
        return json.dumps(
            dataclasses.asdict(self),
            sort_keys=True,
            separators=(',', ':'),
        ).encode('utf-8')

    def digest(self) -> str:
        return f'sha256:{hashlib.sha256(self.canonical_json()).hexdigest()}'


@dataclasses.dataclass(frozen=True)
class CacheRecord:
    '''
    result of converting a single source-layer

    bootstrap: descriptor of the bootstrap-layer (tar+gzip, containing the bootstrap at
      `image/image.boot`); the `containerd.io/uncompressed` annotation carries its diff-id
    blob: descriptor of the nydus data-blob; in reference-mode, this is the source-layer itself;
      `None` if the layer did not contain any regular file-data
    '''
    source_layer_digest: str
    signature_digest: str
    bootstrap: om.OciBlobRef
    blob: om.OciBlobRef | None = None
    chunk_dict_digest: str | None = None
    source_chain_id: str | None = None

    @property
    def key(self) -> tuple[str, str, str | None, str | None]:
        return (
            self.source_layer_digest,
            self.signature_digest,
            self.source_chain_id,
            self.chunk_dict_digest,
        )

    @property
    def bootstrap_diff_id(self) -> str:
        return self.bootstrap.annotations[ANNOTATION_UNCOMPRESSED]
