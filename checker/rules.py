# SPDX-FileCopyrightText: 2024 SAP SE or an SAP affiliate company and Gardener contributors
#
# SPDX-License-Identifier: Apache-2.0

import abc
import collections.abc
import json
import logging
import os
import subprocess
import tempfile

import checker.tree
import converter.model as cm
import oci.model as om

logger = logging.getLogger(__name__)


class RuleViolation(Exception):
    '''
    raised by rules if the checked image does not meet the rule's expectations

    divergence: for filesystem-comparisons, the first divergent path
    '''
    def __init__(
        self,
        rule: str,
        message: str,
        divergence: checker.tree.Divergence | None=None,
    ):
        super().__init__(f'{rule}: {message}')
        self.rule = rule
        self.message = message
        self.divergence = divergence


class Rule(abc.ABC):
    name: str

    @abc.abstractmethod
    def validate(self):
        '''
        raises `RuleViolation` if rule is not met
        '''
        raise NotImplementedError

    def violation(self, message: str, **kwargs) -> RuleViolation:
        return RuleViolation(rule=self.name, message=message, **kwargs)


def is_nydus_manifest(manifest: om.OciImageManifest) -> bool:
    if not manifest.layers:
        return False
    annotations = manifest.layers[-1].annotations or {}
    return annotations.get(cm.ANNOTATION_NYDUS_BOOTSTRAP) == 'true'


class ManifestRule(Rule):
    '''
    checks that the target-manifest is a well-formed nydus-manifest, and (if target is an
    image-index) that the index-entries are consistent
    '''
    name = 'manifest'

    def __init__(
        self,
        platform: om.OciPlatform,
        manifest: om.OciImageManifest,
        config: dict,
        index: om.OciImageManifestList | None=None,
        multi_platform: bool=False,
    ):
        self.platform = platform
        self.manifest = manifest
        self.config = config
        self.index = index
        self.multi_platform = multi_platform

    def validate(self):
        if not is_nydus_manifest(self.manifest):
            raise self.violation('last layer of target is not a nydus-bootstrap')

        bootstrap = self.manifest.layers[-1]
        fs_version = bootstrap.annotations.get(cm.ANNOTATION_FS_VERSION)
        if not fs_version in [v.value for v in cm.FsVersion]:
            raise self.violation(f'invalid {fs_version=} in bootstrap-layer')

        diff_ids = self.config.get('rootfs', {}).get('diff_ids') or ()
        if len(diff_ids) != len(self.manifest.layers):
            raise self.violation(
                f'{len(diff_ids)=} in config does not match {len(self.manifest.layers)=}'
            )

        if not self.index:
            if self.multi_platform:
                raise self.violation('multi-platform target must be an image-index')
            return

        platform_entries = [
            entry for entry in self.index.manifests
            if entry.platform and entry.platform == self.platform
        ]
        nydus_entries = [
            entry for entry in platform_entries
            if entry.platform.has_os_feature(cm.NYDUS_OS_FEATURE)
        ]
        if not nydus_entries:
            raise self.violation(
                f'no index-entry for {self.platform} w/ os-feature {cm.NYDUS_OS_FEATURE}'
            )

        if self.multi_platform and len(nydus_entries) == len(platform_entries):
            raise self.violation(f'index lacks original (OCI) manifest for {self.platform}')


def inspect_bootstrap(bootstrap_path: str, nydus_image: str) -> tuple[str, ...]:
    '''
    returns the blob-ids referenced by the given bootstrap (as reported by `nydus-image check`)
    '''
    with tempfile.TemporaryDirectory() as tmp_dir:
        output_json = os.path.join(tmp_dir, 'output.json')
        res = subprocess.run(
            args=(
                nydus_image,
                'check',
                '--bootstrap', bootstrap_path,
                '--output-json', output_json,
                '--log-level', 'warn',
            ),
            capture_output=True,
            text=True,
        )
        if res.returncode != 0:
            raise RuntimeError(f'{nydus_image} check failed: {res.stderr}')

        with open(output_json) as f:
            return tuple(json.load(f).get('blobs') or ())


class BootstrapRule(Rule):
    '''
    checks that blobs referenced by target's bootstrap-layer are contained in target-manifest
    (unless blobs are stored in an external backend)
    '''
    name = 'bootstrap'

    def __init__(
        self,
        manifest: om.OciImageManifest,
        external_backend: bool=False,
        bootstrap_blob_ids: collections.abc.Callable[[], collections.abc.Iterable[str]]=None,
    ):
        self.manifest = manifest
        self.external_backend = external_backend
        self.bootstrap_blob_ids = bootstrap_blob_ids

    def validate(self):
        bootstrap = self.manifest.layers[-1]
        raw_blob_ids = (bootstrap.annotations or {}).get(cm.ANNOTATION_REFERENCE_BLOB_IDS, '[]')
        try:
            blob_ids = json.loads(raw_blob_ids)
        except ValueError:
            raise self.violation(f'malformed {cm.ANNOTATION_REFERENCE_BLOB_IDS}: {raw_blob_ids}')
        if not isinstance(blob_ids, list):
            raise self.violation(f'malformed {cm.ANNOTATION_REFERENCE_BLOB_IDS}: {raw_blob_ids}')

        if self.bootstrap_blob_ids:
            missing = set(self.bootstrap_blob_ids()) - set(blob_ids)
            if missing:
                raise self.violation(f'bootstrap refers to unannotated blobs: {sorted(missing)}')

        if self.external_backend:
            return

        layer_blob_ids = {
            layer.digest.removeprefix('sha256:') for layer in self.manifest.layers[:-1]
        }
        for blob_id in blob_ids:
            if not blob_id in layer_blob_ids:
                raise self.violation(f'blob {blob_id} is not contained in target-manifest')


class FilesystemRule(Rule):
    '''
    compares filesystem-views of source and target
    '''
    name = 'filesystem'

    def __init__(
        self,
        source: collections.abc.Iterable[checker.tree.Entry],
        target: collections.abc.Iterable[checker.tree.Entry],
    ):
        self.source = source
        self.target = target

    def validate(self):
        if (divergence := checker.tree.compare(source=self.source, target=self.target)):
            raise self.violation(str(divergence), divergence=divergence)
