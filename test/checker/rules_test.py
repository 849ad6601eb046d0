import json
import subprocess

import pytest

import checker.rules as examinee
import checker.tree
import converter.model as cm
import oci.model as om

AMD64 = om.OciPlatform(os='linux', architecture='amd64')
NYDUS_AMD64 = om.OciPlatform(
    os='linux',
    architecture='amd64',
    os_features=(cm.NYDUS_OS_FEATURE,),
)


def _blob(name: str, **annotations) -> om.OciBlobRef:
    return om.OciBlobRef(
        digest=f'sha256:{name}',
        mediaType=om.NYDUS_BLOB_MIME,
        size=1,
        annotations=annotations or None,
    )


def nydus_manifest(
    blob_ids=('b1', 'b2'),
    fs_version='6',
    layer_blob_ids=None,
) -> om.OciImageManifest:
    if layer_blob_ids is None:
        layer_blob_ids = blob_ids

    layers = [_blob(blob_id) for blob_id in layer_blob_ids]
    layers.append(om.OciBlobRef(
        digest='sha256:bootstrap',
        mediaType=om.OCI_LAYER_TAR_GZIP_MIME,
        size=1,
        annotations={
            cm.ANNOTATION_NYDUS_BOOTSTRAP: 'true',
            cm.ANNOTATION_FS_VERSION: fs_version,
            cm.ANNOTATION_REFERENCE_BLOB_IDS: json.dumps(list(blob_ids)),
        },
    ))
    return om.OciImageManifest(
        config=om.OciBlobRef(digest='sha256:cfg', mediaType=om.OCI_IMAGE_CONFIG_MIME, size=1),
        layers=layers,
    )


def config_for(manifest: om.OciImageManifest) -> dict:
    return {'rootfs': {'diff_ids': [layer.digest for layer in manifest.layers]}}


def index(*platforms) -> om.OciImageManifestList:
    return om.OciImageManifestList(manifests=[
        om.OciImageManifestListEntry(
            digest=f'sha256:{idx}',
            mediaType=om.OCI_MANIFEST_SCHEMA_V2_MIME,
            size=1,
            platform=platform,
        )
        for idx, platform in enumerate(platforms)
    ])


def test_is_nydus_manifest():
    assert examinee.is_nydus_manifest(nydus_manifest())

    plain = om.OciImageManifest(config=_blob('cfg'), layers=[_blob('layer')])
    assert not examinee.is_nydus_manifest(plain)
    assert not examinee.is_nydus_manifest(om.OciImageManifest(config=_blob('cfg'), layers=[]))


def test_manifest_rule():
    manifest = nydus_manifest()

    examinee.ManifestRule(platform=AMD64, manifest=manifest, config=config_for(manifest)).validate()


@pytest.mark.parametrize('manifest, config', (
    (
        om.OciImageManifest(config=_blob('cfg'), layers=[_blob('layer')]),
        {'rootfs': {'diff_ids': ['sha256:layer']}},
    ),
    (nydus_manifest(fs_version='4'), config_for(nydus_manifest())),
    (nydus_manifest(), {'rootfs': {'diff_ids': ['sha256:only-one']}}),
))
def test_manifest_rule_violations(manifest, config):
    rule = examinee.ManifestRule(platform=AMD64, manifest=manifest, config=config)

    with pytest.raises(examinee.RuleViolation) as exc_info:
        rule.validate()

    assert exc_info.value.rule == 'manifest'


def test_manifest_rule_multi_platform():
    manifest = nydus_manifest()

    def rule(idx, multi_platform):
        return examinee.ManifestRule(
            platform=AMD64,
            manifest=manifest,
            config=config_for(manifest),
            index=idx,
            multi_platform=multi_platform,
        )

    rule(index(AMD64, NYDUS_AMD64), multi_platform=True).validate()
    rule(index(NYDUS_AMD64), multi_platform=False).validate()

    with pytest.raises(examinee.RuleViolation, match='image-index'):
        rule(None, multi_platform=True).validate()

    with pytest.raises(examinee.RuleViolation, match='original'):
        rule(index(NYDUS_AMD64), multi_platform=True).validate()

    with pytest.raises(examinee.RuleViolation, match=cm.NYDUS_OS_FEATURE):
        rule(index(AMD64), multi_platform=False).validate()

    arm64 = om.OciPlatform(os='linux', architecture='arm64', os_features=(cm.NYDUS_OS_FEATURE,))
    with pytest.raises(examinee.RuleViolation):
        rule(index(AMD64, arm64), multi_platform=False).validate()


def test_bootstrap_rule():
    examinee.BootstrapRule(manifest=nydus_manifest()).validate()

    # blobs stored in external backends are not part of the manifest
    examinee.BootstrapRule(
        manifest=nydus_manifest(layer_blob_ids=()),
        external_backend=True,
    ).validate()

    with pytest.raises(examinee.RuleViolation, match='b2'):
        examinee.BootstrapRule(manifest=nydus_manifest(layer_blob_ids=('b1',))).validate()


def test_bootstrap_rule_w_inspected_bootstrap():
    manifest = nydus_manifest()

    examinee.BootstrapRule(manifest=manifest, bootstrap_blob_ids=lambda: ['b1']).validate()

    with pytest.raises(examinee.RuleViolation, match='unannotated'):
        examinee.BootstrapRule(
            manifest=manifest,
            bootstrap_blob_ids=lambda: ['b1', 'b3'],
        ).validate()


def test_bootstrap_rule_malformed_annotation():
    manifest = nydus_manifest()
    manifest.layers[-1].annotations[cm.ANNOTATION_REFERENCE_BLOB_IDS] = '{"b1": true}'

    with pytest.raises(examinee.RuleViolation, match='malformed'):
        examinee.BootstrapRule(manifest=manifest).validate()

    manifest.layers[-1].annotations[cm.ANNOTATION_REFERENCE_BLOB_IDS] = 'not-json'
    with pytest.raises(examinee.RuleViolation, match='malformed'):
        examinee.BootstrapRule(manifest=manifest).validate()


def test_filesystem_rule():
    entries = [checker.tree.Entry(path='/a', type=checker.tree.EntryType.DIRECTORY)]

    examinee.FilesystemRule(source=entries, target=list(entries)).validate()

    with pytest.raises(examinee.RuleViolation) as exc_info:
        examinee.FilesystemRule(source=entries, target=[]).validate()

    assert exc_info.value.rule == 'filesystem'
    assert exc_info.value.divergence.path == '/a'
    assert exc_info.value.divergence.kind is checker.tree.DivergenceKind.MISSING


def test_inspect_bootstrap(monkeypatch):
    def run(args, **kwargs):
        output_json = args[args.index('--output-json') + 1]
        with open(output_json, 'w') as f:
            json.dump({'blobs': ['b1', 'b2']}, f)
        return subprocess.CompletedProcess(args=args, returncode=0, stdout='', stderr='')

    monkeypatch.setattr(subprocess, 'run', run)

    assert examinee.inspect_bootstrap('/work/image.boot', nydus_image='nydus-image') == ('b1', 'b2')


def test_inspect_bootstrap_failure(monkeypatch):
    def run(args, **kwargs):
        return subprocess.CompletedProcess(args=args, returncode=1, stdout='', stderr='corrupt')

    monkeypatch.setattr(subprocess, 'run', run)

    with pytest.raises(RuntimeError, match='corrupt'):
        examinee.inspect_bootstrap('/work/image.boot', nydus_image='nydus-image')
