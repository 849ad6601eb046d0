# SPDX-FileCopyrightText: 2024 SAP SE or an SAP affiliate company and Gardener contributors
#
# SPDX-License-Identifier: Apache-2.0

import collections.abc
import dataclasses
import enum
import functools
import json
import typing
import urllib.parse

import dacite

import oci.util

OCI_MANIFEST_SCHEMA_V2_MIME = 'application/vnd.oci.image.manifest.v1+json'
OCI_IMAGE_INDEX_MIME = 'application/vnd.oci.image.index.v1+json'
OCI_IMAGE_CONFIG_MIME = 'application/vnd.oci.image.config.v1+json'
OCI_LAYER_TAR_MIME = 'application/vnd.oci.image.layer.v1.tar'
OCI_LAYER_TAR_GZIP_MIME = 'application/vnd.oci.image.layer.v1.tar+gzip'
OCI_LAYER_TAR_ZSTD_MIME = 'application/vnd.oci.image.layer.v1.tar+zstd'
OCI_EMPTY_JSON_MIME = 'application/vnd.oci.empty.v1+json'
OCI_EMPTY_JSON_DIGEST = 'sha256:44136fa355b3678a1146ad16f7e8649e94fb4fc21fe77e8310c060f61caaff8a'

NYDUS_BLOB_MIME = 'application/vnd.oci.image.layer.nydus.blob.v1'

DOCKER_MANIFEST_LIST_MIME = 'application/vnd.docker.distribution.manifest.list.v2+json'
DOCKER_MANIFEST_SCHEMA_V2_MIME = 'application/vnd.docker.distribution.manifest.v2+json'
DOCKER_IMAGE_CONFIG_MIME = 'application/vnd.docker.container.image.v1+json'
DOCKER_LAYER_TAR_GZIP_MIME = 'application/vnd.docker.image.rootfs.diff.tar.gzip'

# docker-mimetype -> oci-mimetype
DOCKER_TO_OCI_MIMES = {
    DOCKER_MANIFEST_LIST_MIME: OCI_IMAGE_INDEX_MIME,
    DOCKER_MANIFEST_SCHEMA_V2_MIME: OCI_MANIFEST_SCHEMA_V2_MIME,
    DOCKER_IMAGE_CONFIG_MIME: OCI_IMAGE_CONFIG_MIME,
    DOCKER_LAYER_TAR_GZIP_MIME: OCI_LAYER_TAR_GZIP_MIME,
}

GZIP_LAYER_MIMES = (OCI_LAYER_TAR_GZIP_MIME, DOCKER_LAYER_TAR_GZIP_MIME)


class MimeTypes:
    '''
    predefined, well-known mimetypes, handy to be used in oci.client.Client.manifest as `accept` arg

    single_image: force single-image
    multiarch: force multi-arch (image-list)
    prefer_multiarch

    note: not all registries honour `access` header
    '''
    single_image = ', '.join((OCI_MANIFEST_SCHEMA_V2_MIME, DOCKER_MANIFEST_SCHEMA_V2_MIME))
    multiarch = ', '.join((OCI_IMAGE_INDEX_MIME, DOCKER_MANIFEST_LIST_MIME))
    prefer_multiarch = ', '.join((multiarch, single_image))


def is_docker_mimetype(mimetype: str) -> bool:
    return mimetype.startswith('application/vnd.docker.')


def to_oci_mimetype(mimetype: str) -> str:
    return DOCKER_TO_OCI_MIMES.get(mimetype, mimetype)


class OciTagType(enum.Enum):
    SYMBOLIC = 'symbolic'
    DIGEST = 'digest'
    NO_TAG = 'no_tag'


class OciImageReference:
    @staticmethod
    def to_image_ref(
        image_reference: typing.Union[str, 'OciImageReference'],
        normalise: bool=True,
    ):
        if isinstance(image_reference, OciImageReference):
            return image_reference
        else:
            return OciImageReference(
                image_reference=image_reference,
                normalise=normalise,
            )

    def __init__(
        self,
        image_reference: typing.Union[str, 'OciImageReference'],
        normalise: bool=True,
    ):
        if isinstance(image_reference, OciImageReference):
            self._orig_image_reference = image_reference._orig_image_reference
        elif isinstance(image_reference, str):
            self._orig_image_reference = image_reference
        else:
            raise ValueError(image_reference)
        self._normalise = normalise

    @property
    def original_image_reference(self) -> str:
        return self._orig_image_reference

    @property
    @functools.cache
    def normalised_image_reference(self) -> str:
        return oci.util.normalise_image_reference(self._orig_image_reference)

    @property
    @functools.cache
    def netloc(self) -> str:
        return self.urlparsed.netloc

    @property
    @functools.cache
    def ref_without_tag(self) -> str:
        '''
        returns the (normalised) image reference w/o the tag or digest tag.
        '''
        p = self.urlparsed
        name = p.netloc + p.path.rsplit('@', 1)[0].rsplit(':', 1)[0]

        return name

    @property
    @functools.cache
    def name(self) -> str:
        '''
        returns the (normalised) repository name (omitting registry-host and tag)
        '''
        p = self.urlparsed
        name = p.path[1:].rsplit('@', 1)[0].rsplit(':', 1)[0]

        return name

    @property
    @functools.cache
    def has_digest_tag(self) -> bool:
        return self.tag_type is OciTagType.DIGEST

    @property
    @functools.cache
    def has_symbolical_tag(self) -> bool:
        return self.tag_type is OciTagType.SYMBOLIC

    @property
    @functools.cache
    def has_tag(self):
        return not self.tag_type is OciTagType.NO_TAG

    @property
    @functools.cache
    def tag(self) -> str:
        p = self.urlparsed

        if '@' in p.path:
            return p.path.rsplit('@', 1)[-1]
        elif ':' in p.path:
            return p.path.rsplit(':', 1)[-1]
        else:
            raise ValueError(f'no tag found for {str(self)}')

    @property
    @functools.cache
    def tag_type(self) -> OciTagType:
        p = self.urlparsed

        if '@' in p.path:
            return OciTagType.DIGEST
        elif ':' in p.path:
            return OciTagType.SYMBOLIC
        else:
            return OciTagType.NO_TAG

    @property
    def parsed_digest_tag(self) -> tuple[str, str]:
        if not self.tag_type is OciTagType.DIGEST:
            raise ValueError(f'not a digest-tag: {str(self)=}')

        algorithm, digest = self.tag.split(':')
        return algorithm, digest

    @property
    @functools.cache
    def urlparsed(self) -> urllib.parse.ParseResult:
        if not '://' in (img_ref := str(self)) and not img_ref.startswith('/'):
            return urllib.parse.urlparse(f'https://{img_ref}')
        return urllib.parse.urlparse(img_ref)

    def with_tag(self, tag: str) -> 'OciImageReference':
        if tag.startswith('sha256:'):
            image_ref = f'{self.ref_without_tag}@{tag}'
        else:
            image_ref = f'{self.ref_without_tag}:{tag}'

        return OciImageReference(
            image_reference=image_ref,
            normalise=self._normalise,
        )

    def with_tag_suffix(self, suffix: str) -> 'OciImageReference':
        '''
        returns a reference with the given suffix appended to the symbolic tag, e.g.

        example.org/nginx:latest + -nydus -> example.org/nginx:latest-nydus

        a reference w/o tag is treated as if it referred to `latest`; digest-references are
        rejected (they cannot be suffixed).
        '''
        if self.has_digest_tag:
            raise ValueError(f'unsupported digested image reference: {str(self)}')

        tag = self.tag if self.has_tag else 'latest'

        return self.with_tag(tag + suffix)

    def __str__(self) -> str:
        if self._normalise:
            return self.normalised_image_reference
        return self._orig_image_reference

    def __repr__(self) -> str:
        return f'OciImageReference({str(self)})'

    def __eq__(self, other) -> bool:
        if not isinstance(other, OciImageReference):
            return False

        if self._orig_image_reference == other._orig_image_reference:
            return True

        return oci.util.normalise_image_reference(self._orig_image_reference) == \
               oci.util.normalise_image_reference(other._orig_image_reference)

    def __hash__(self):
        return hash((oci.util.normalise_image_reference(self._orig_image_reference),))


class OciImageNotFoundException(Exception):
    pass


@dataclasses.dataclass(kw_only=True)
class OciBlobRef:
    digest: str
    mediaType: str
    size: int
    annotations: dict | None = None

    def as_dict(self) -> dict:
        raw = dataclasses.asdict(self)
        # fields that are None should not be included in the output
        raw = {k:v for k,v in raw.items() if v is not None}
        return raw

    def __hash__(self):
        annotations = tuple(sorted(self.annotations.items())) if self.annotations else ()
        return hash((self.digest, self.size, self.mediaType, annotations))

    def __eq__(self, other) -> bool:
        if not isinstance(other, OciBlobRef):
            return False

        return (
            self.digest == other.digest
            and self.mediaType == other.mediaType
            and self.size == other.size
            and self.annotations == other.annotations
        )


@dataclasses.dataclass
class OciImageManifest:
    config: OciBlobRef
    layers: collections.abc.Sequence[OciBlobRef]
    mediaType: str = OCI_MANIFEST_SCHEMA_V2_MIME
    schemaVersion: int = 2
    annotations: dict = dataclasses.field(default_factory=dict)
    artifactType: str | None = None
    subject: OciBlobRef | None = None

    def as_dict(self) -> dict:
        raw = {
            'schemaVersion': self.schemaVersion,
            'mediaType': self.mediaType,
        }
        if self.artifactType:
            raw['artifactType'] = self.artifactType

        raw['config'] = self.config.as_dict()
        raw['layers'] = [layer.as_dict() for layer in self.layers]

        if self.subject:
            raw['subject'] = self.subject.as_dict()
        # some registries reject null-values / docker-manifests do not define annotations
        if self.annotations:
            raw['annotations'] = self.annotations

        return raw

    def as_bytes(self) -> bytes:
        return json.dumps(self.as_dict(), indent=2).encode('utf-8')

    def blobs(self) -> collections.abc.Generator[OciBlobRef, None, None]:
        yield self.config
        yield from self.layers


@dataclasses.dataclass(frozen=True)
class OciPlatform:
    '''
    https://github.com/opencontainers/image-spec/blob/main/image-index.md#image-index-property-descriptions

    `os_features` and `os_version` are serialised as `os.features` and `os.version`.
    '''
    architecture: str
    os: str
    variant: str | None = None
    features: tuple[str, ...] | None = None
    os_features: tuple[str, ...] | None = None
    os_version: str | None = None

    @staticmethod
    def from_dict(raw: dict) -> 'OciPlatform':
        raw = dict(raw)
        if 'os.features' in raw:
            raw['os_features'] = raw.pop('os.features')
        if 'os.version' in raw:
            raw['os_version'] = raw.pop('os.version')

        return dacite.from_dict(
            data_class=OciPlatform,
            data=raw,
            config=dacite.Config(cast=[tuple]),
        )

    def as_dict(self) -> dict:
        # need custom serialisation, because some OCI registries do not like null-values
        # (must be absent instead)
        raw = {
            'architecture': self.architecture,
            'os': self.os,
        }
        if self.os_version:
            raw['os.version'] = self.os_version
        if self.os_features:
            raw['os.features'] = list(self.os_features)
        if self.variant:
            raw['variant'] = self.variant
        if self.features:
            raw['features'] = list(self.features)

        return raw

    def normalise(self) -> 'OciPlatform':
        '''
        returns an equivalent platform using the (golang-)names conventionally used in
        oci-image-indices (e.g. x86_64 -> amd64)
        '''
        architecture = {
            'x86_64': 'amd64',
            'x86-64': 'amd64',
            'aarch64': 'arm64',
            'i386': '386',
        }.get(self.architecture, self.architecture)

        variant = self.variant
        if architecture == 'arm64' and variant == 'v8':
            variant = None

        return dataclasses.replace(
            self,
            architecture=architecture,
            variant=variant,
        )

    def has_os_feature(self, feature: str) -> bool:
        return feature in (self.os_features or ())

    def __str__(self):
        if self.variant:
            return f'{self.os}/{self.architecture}/{self.variant}'
        return f'{self.os}/{self.architecture}'

    def __eq__(self, other):
        if not isinstance(other, OciPlatform):
            return False

        left = self.normalise()
        right = other.normalise()

        return (
            left.architecture == right.architecture
            and left.os == right.os
            and left.variant == right.variant
        )

    def __hash__(self):
        normalised = self.normalise()
        return hash((normalised.os, normalised.architecture, normalised.variant))


@dataclasses.dataclass(kw_only=True)
class OciImageManifestListEntry(OciBlobRef):
    platform: OciPlatform | None = None
    artifactType: str | None = None
    urls: list[str] | None = None

    @staticmethod
    def from_dict(raw: dict) -> 'OciImageManifestListEntry':
        raw = dict(raw)
        platform = raw.pop('platform', None)

        entry = dacite.from_dict(
            data_class=OciImageManifestListEntry,
            data=raw,
        )
        if platform:
            entry.platform = OciPlatform.from_dict(platform)

        return entry

    def as_dict(self) -> dict:
        raw = {
            'mediaType': self.mediaType,
            'digest': self.digest,
            'size': self.size,
        }
        # platform is an optional attribute according to oci spec
        # => only include in the output if set
        if self.platform:
            raw['platform'] = self.platform.as_dict()
        if self.artifactType:
            raw['artifactType'] = self.artifactType
        if self.annotations:
            raw['annotations'] = self.annotations
        if self.urls:
            raw['urls'] = self.urls

        return raw

    def __hash__(self):
        return OciBlobRef.__hash__(self)


@dataclasses.dataclass
class OciImageManifestList:
    '''Covers both Docker Manifest List
        (https://github.com/distribution/distribution/blob/main/docs/spec/manifest-v2-2.md#manifest-list)
        and OCI Image Index
        (https://github.com/opencontainers/image-spec/blob/main/image-index.md)
    '''
    manifests: list[OciImageManifestListEntry]
    mediaType: str = OCI_IMAGE_INDEX_MIME
    schemaVersion: int = 2
    annotations: dict = dataclasses.field(default_factory=dict)

    @staticmethod
    def from_dict(raw: dict) -> 'OciImageManifestList':
        return OciImageManifestList(
            manifests=[
                OciImageManifestListEntry.from_dict(entry)
                for entry in raw.get('manifests') or ()
            ],
            mediaType=raw.get('mediaType', OCI_IMAGE_INDEX_MIME),
            schemaVersion=raw.get('schemaVersion', 2),
            annotations=raw.get('annotations') or {},
        )

    def as_dict(self):
        raw = {
            'schemaVersion': self.schemaVersion,
            'mediaType': self.mediaType,
            'manifests': [le.as_dict() for le in self.manifests],
        }

        if self.mediaType == OCI_IMAGE_INDEX_MIME and self.annotations:
            raw['annotations'] = self.annotations

        return raw

    def as_bytes(self) -> bytes:
        return json.dumps(self.as_dict(), indent=2).encode('utf-8')


def as_manifest(
    manifest: str | bytes | dict | OciImageManifest | OciImageManifestList,
) -> OciImageManifest | OciImageManifestList:
    '''
    returns a deserialised equivalent of the passed-in manifest. For convenience, if passed-in
    manifest is already an instance of either OciImageManifest or OciImageManifestList, the
    passed value is returned unchanged.
    '''
    if isinstance(manifest, (OciImageManifest, OciImageManifestList)):
        return manifest

    if isinstance(manifest, (str, bytes)):
        manifest = json.loads(manifest)

    media_type = manifest.get('mediaType')

    if media_type in (
        DOCKER_MANIFEST_LIST_MIME,
        OCI_IMAGE_INDEX_MIME,
    ) or (media_type is None and 'manifests' in manifest):
        return OciImageManifestList.from_dict(manifest)

    if media_type in (
        DOCKER_MANIFEST_SCHEMA_V2_MIME,
        OCI_MANIFEST_SCHEMA_V2_MIME,
    ) or (media_type is None and 'layers' in manifest):
        manifest = dict(manifest)
        manifest.setdefault('mediaType', OCI_MANIFEST_SCHEMA_V2_MIME)
        return dacite.from_dict(
            data_class=OciImageManifest,
            data=manifest,
        )

    raise ValueError(manifest, 'unknown schema-version')
