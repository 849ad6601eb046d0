# SPDX-FileCopyrightText: 2024 SAP SE or an SAP affiliate company and Gardener contributors
#
# SPDX-License-Identifier: Apache-2.0

import dataclasses
import enum
import logging
import os

import converter.model as cm
import oci
import oci.client as oc
import oci.model as om
import oci.util
import tarutil

logger = logging.getLogger(__name__)


class ChunkDictKind(enum.Enum):
    BOOTSTRAP = 'bootstrap'


class ChunkDictSource(enum.Enum):
    REGISTRY = 'registry'
    LOCAL = 'local'


@dataclasses.dataclass(frozen=True)
class ChunkDictSpec:
    kind: ChunkDictKind
    source: ChunkDictSource
    locator: str

    def __str__(self):
        return f'{self.kind.value}:{self.source.value}:{self.locator}'


@dataclasses.dataclass(frozen=True)
class ChunkDict:
    '''
    a resolved chunk-dictionary

    path: local path to (raw) bootstrap
    digest: identity of the dictionary (digest of its bootstrap-layer, or of local bootstrap-file)
    blobs: data-blobs of dictionary (blob-id -> descriptor); only for dictionaries read from
      registry
    '''
    spec: ChunkDictSpec
    path: str
    digest: str
    image_reference: om.OciImageReference | None = None
    blobs: dict[str, om.OciBlobRef] = dataclasses.field(default_factory=dict)


def parse_chunk_dict_args(expr: str) -> ChunkDictSpec:
    '''
    parses chunk-dict-expressions of the form `<kind>:<source>:<locator>`, e.g.

    - bootstrap:registry:example.org/dict:latest
    - bootstrap:local:/path/to/bootstrap
    '''
    parts = expr.split(':', 2)
    if len(parts) != 3 or not parts[2]:
        raise ValueError(f'invalid chunk-dict expression {expr=}, expected <kind>:<source>:<ref>')

    kind, source, locator = parts

    try:
        kind = ChunkDictKind(kind)
    except ValueError:
        raise ValueError(f'unsupported chunk-dict kind {kind=} in {expr=}')

    try:
        source = ChunkDictSource(source)
    except ValueError:
        raise ValueError(f'unsupported chunk-dict source {source=} in {expr=}')

    return ChunkDictSpec(
        kind=kind,
        source=source,
        locator=locator,
    )


def _dict_manifest(
    image_reference: om.OciImageReference,
    oci_client: oc.Client,
    platform: om.OciPlatform | None,
) -> tuple[om.OciImageReference, om.OciImageManifest]:
    manifest = oci_client.manifest(
        image_reference=image_reference,
        accept=om.MimeTypes.prefer_multiarch,
    )
    if isinstance(manifest, om.OciImageManifest):
        return image_reference, manifest

    for entry in manifest.manifests:
        if not entry.platform or not entry.platform.has_os_feature(cm.NYDUS_OS_FEATURE):
            continue
        if platform and entry.platform != platform:
            continue

        digest_ref = image_reference.with_tag(entry.digest)
        return digest_ref, oci_client.manifest(image_reference=digest_ref)

    raise ValueError(f'no nydus-manifest for {platform=} in chunk-dict {image_reference}')


def resolve(
    spec: ChunkDictSpec,
    work_dir: str,
    oci_client: oc.Client | None=None,
    platform: om.OciPlatform | None=None,
) -> ChunkDict:
    '''
    makes the given chunk-dict locally available (registry-dicts are downloaded into work_dir)
    '''
    if spec.source is ChunkDictSource.LOCAL:
        if not os.path.isfile(spec.locator):
            raise ValueError(f'chunk-dict bootstrap {spec.locator} does not exist')
        digest, _ = oci.util.file_digest(spec.locator)
        return ChunkDict(
            spec=spec,
            path=spec.locator,
            digest=digest,
        )

    image_reference = om.OciImageReference.to_image_ref(spec.locator)
    image_reference, manifest = _dict_manifest(
        image_reference=image_reference,
        oci_client=oci_client,
        platform=platform,
    )

    bootstrap_layer = manifest.layers[-1]
    if (bootstrap_layer.annotations or {}).get(cm.ANNOTATION_NYDUS_BOOTSTRAP) != 'true':
        raise ValueError(f'chunk-dict {image_reference} lacks bootstrap-layer')

    os.makedirs(work_dir, exist_ok=True)
    layer_path = os.path.join(work_dir, 'chunk-dict.tar.gz')
    bootstrap_path = os.path.join(work_dir, 'chunk-dict.boot')

    logger.info(f'retrieving chunk-dict from {image_reference}')
    oci.blob_to_file(
        oci_client=oci_client,
        image_reference=image_reference,
        blob=bootstrap_layer,
        path=layer_path,
    )
    tarutil.extract_single_file(
        src=layer_path,
        arcname=cm.BOOTSTRAP_TAR_PATH,
        dst_path=bootstrap_path,
    )

    blobs = {
        layer.digest.removeprefix('sha256:'): layer
        for layer in manifest.layers[:-1]
        if layer.mediaType == om.NYDUS_BLOB_MIME
    }

    return ChunkDict(
        spec=spec,
        path=bootstrap_path,
        digest=bootstrap_layer.digest,
        image_reference=image_reference,
        blobs=blobs,
    )
