import json

import pytest

import converter
import converter.model as cm
import converter.options
import oci.model as om
import oci.retry
import oci.util

from _test_utils import (
    APP_LAYER,
    BASE_LAYER,
    FakeBuilder,
    FakeRegistry,
    File,
    push_image,
    push_index,
)

SOURCE = 'registry.example.org/app:1.0'
TARGET = 'registry.example.org/app:1.0-nydus'
CACHE = 'registry.example.org/app:nydus-cache'


@pytest.fixture
def source_image(registry):
    return push_image(registry, SOURCE, layers=[BASE_LAYER, APP_LAYER])


def options(tmp_path, **kwargs) -> converter.options.Options:
    defaults = dict(
        source=SOURCE,
        target=TARGET,
        build_cache=CACHE,
        platforms='linux/amd64',
        work_dir=str(tmp_path / 'work'),
        push_retry_delay='0s',
    )
    return converter.options.Options(**(defaults | kwargs))


def convert(registry, opts, builder=None, cancel=None):
    return converter.convert(
        options=opts,
        builder=builder or FakeBuilder(),
        client_factory=lambda insecure: registry,
        cancel=cancel,
    )


def test_convert(tmp_path, registry, source_image):
    builder = FakeBuilder()

    result = convert(registry, options(tmp_path), builder=builder)

    assert builder.invocations == 2
    assert result.index is None
    assert result.target == TARGET

    manifest = registry.manifest(TARGET)
    assert oci.util.sha256_digest(registry.manifest_raw(TARGET).content) == result.digest

    *blob_layers, bootstrap_layer = manifest.layers
    assert len(blob_layers) == 2
    for layer in blob_layers:
        assert layer.mediaType == om.NYDUS_BLOB_MIME
        assert layer.annotations == {cm.ANNOTATION_NYDUS_BLOB: 'true'}

    annotations = bootstrap_layer.annotations
    assert annotations[cm.ANNOTATION_NYDUS_BOOTSTRAP] == 'true'
    assert annotations[cm.ANNOTATION_FS_VERSION] == '6'
    assert json.loads(annotations[cm.ANNOTATION_REFERENCE_BLOB_IDS]) == [
        layer.digest.removeprefix('sha256:') for layer in blob_layers
    ]

    config = registry.blob(TARGET, manifest.config.digest).json()
    assert len(config['rootfs']['diff_ids']) == len(manifest.layers)
    assert config['config'] == {'Cmd': ['/bin/sh']}

    # source-layers are chained through parent-bootstraps
    assert builder.requests[0].parent_bootstrap_path is None
    assert builder.requests[1].parent_bootstrap_path == builder.requests[0].bootstrap_path

    # per-platform work-dirs are removed
    assert list((tmp_path / 'work').iterdir()) == []

    assert registry.has_tag(CACHE)


def test_second_run_is_served_from_cache(tmp_path, registry, source_image):
    first = convert(registry, options(tmp_path))

    builder = FakeBuilder()
    second = convert(registry, options(tmp_path), builder=builder)

    assert builder.invocations == 0
    assert builder.version_calls == 1
    assert second.digest == first.digest
    assert second.images[0].manifest_bytes == first.images[0].manifest_bytes
    assert second.metrics['cache_hits'] == 2
    assert second.metrics['cache_misses'] == 0


def test_partially_cached_image(tmp_path, registry, source_image):
    convert(registry, options(tmp_path))

    extended = 'registry.example.org/app:1.1'
    push_image(
        registry,
        extended,
        layers=[BASE_LAYER, APP_LAYER, {'app/version': File(b'1.1')}],
    )

    builder = FakeBuilder()
    result = convert(
        registry,
        options(tmp_path, source=extended, target='registry.example.org/app:1.1-nydus'),
        builder=builder,
    )

    # only the new topmost layer is built, on top of the cached bootstrap of its parent
    assert builder.invocations == 1
    assert builder.requests[0].parent_bootstrap_path
    assert result.metrics['cache_hits'] == 2

    manifest = registry.manifest('registry.example.org/app:1.1-nydus')
    assert len(manifest.layers) == 4


def test_cache_w_fewer_records(tmp_path, registry, source_image):
    convert(registry, options(tmp_path, build_cache_max_records=1))

    cache_manifest = registry.manifest(CACHE)
    bootstraps = [
        layer for layer in cache_manifest.layers
        if layer.annotations.get(cm.ANNOTATION_NYDUS_BOOTSTRAP) == 'true'
    ]
    assert len(bootstraps) == 1


def test_convert_without_cache(tmp_path, registry, source_image):
    builder = FakeBuilder()

    convert(registry, options(tmp_path, build_cache=None), builder=builder)
    convert(registry, options(tmp_path, build_cache=None), builder=builder)

    assert builder.invocations == 4
    assert not registry.has_tag(CACHE)


def test_reference_mode(tmp_path, registry, source_image):
    target = 'registry.example.org/app-nydus:1.0'
    builder = FakeBuilder()

    result = convert(
        registry,
        options(
            tmp_path,
            target=target,
            build_cache='registry.example.org/app-nydus:cache',
            oci_ref=True,
        ),
        builder=builder,
    )

    assert all(request.oci_ref for request in builder.requests)
    assert all(request.blob_path is None for request in builder.requests)

    source_manifest = registry.manifest(SOURCE)
    manifest = registry.manifest(target)
    *ref_layers, bootstrap_layer = manifest.layers

    # source-layers serve as data-blobs (zero-copy)
    assert [layer.digest for layer in ref_layers] == \
        [layer.digest for layer in source_manifest.layers]
    for layer in ref_layers:
        assert layer.annotations == {cm.ANNOTATION_REF_LAYER: layer.digest}
    assert registry.calls['mount_blob'] >= 2

    source_config = registry.blob(SOURCE, source_manifest.config.digest).json()
    config = registry.blob(target, manifest.config.digest).json()
    assert config['rootfs']['diff_ids'][:-1] == source_config['rootfs']['diff_ids']

    assert manifest.mediaType == om.OCI_MANIFEST_SCHEMA_V2_MIME
    assert result.images[0].manifest.subject is None


def test_reference_mode_w_referrer(tmp_path, registry, source_image):
    result = convert(registry, options(tmp_path, oci_ref=True, with_referrer=True))

    subject = result.images[0].manifest.subject
    assert subject.digest == source_image.digest


def test_docker_source(tmp_path, registry):
    push_image(registry, SOURCE, layers=[BASE_LAYER], docker=True)

    convert(registry, options(tmp_path))
    manifest = registry.manifest(TARGET)
    assert manifest.mediaType == om.DOCKER_MANIFEST_SCHEMA_V2_MIME
    assert manifest.layers[-1].mediaType == om.DOCKER_LAYER_TAR_GZIP_MIME

    convert(registry, options(tmp_path, target='registry.example.org/app:oci', docker2oci=True))
    manifest = registry.manifest('registry.example.org/app:oci')
    assert manifest.mediaType == om.OCI_MANIFEST_SCHEMA_V2_MIME
    assert manifest.config.mediaType == om.OCI_IMAGE_CONFIG_MIME


def test_push_is_retried(tmp_path, registry, source_image):
    registry.put_manifest_failures[str(om.OciImageReference(TARGET))] = 2

    convert(registry, options(tmp_path, push_retry_count=3))

    assert registry.has_tag(TARGET)
    assert registry.has_tag(CACHE)


def test_push_fails_after_retries(tmp_path, registry, source_image):
    registry.put_manifest_failures[str(om.OciImageReference(TARGET))] = 3

    with pytest.raises(oci.retry.TransientError):
        convert(registry, options(tmp_path, push_retry_count=3))

    assert not registry.has_tag(TARGET)
    # cache is only exported after target was pushed
    assert not registry.has_tag(CACHE)


def test_multi_platform(tmp_path, registry):
    entries = []
    for architecture in ('amd64', 'arm64'):
        entries.append(push_image(
            registry,
            f'registry.example.org/multi:{architecture}',
            layers=[BASE_LAYER, {'arch': File(architecture.encode('utf-8'))}],
            architecture=architecture,
        ))
    push_index(registry, 'registry.example.org/multi:1.0', entries)

    result = convert(
        registry,
        options(
            tmp_path,
            source='registry.example.org/multi:1.0',
            target='registry.example.org/multi:1.0-nydus',
            build_cache=None,
            platforms='linux/amd64,linux/arm64',
        ),
    )

    index = registry.manifest('registry.example.org/multi:1.0-nydus')
    assert isinstance(index, om.OciImageManifestList)
    assert index == result.index
    assert len(index.manifests) == 4

    # original manifests are retained (and replicated into target-repository)
    for entry in entries:
        assert entry.digest in [e.digest for e in index.manifests]
        assert registry.has_tag(f'registry.example.org/multi@{entry.digest}')

    nydus_entries = [
        e for e in index.manifests if e.platform.has_os_feature(cm.NYDUS_OS_FEATURE)
    ]
    assert sorted(e.platform.architecture for e in nydus_entries) == ['amd64', 'arm64']
    for entry in nydus_entries:
        assert registry.has_tag(f'registry.example.org/multi@{entry.digest}')


def test_platform_selection(tmp_path, registry):
    entries = [
        push_image(registry, 'registry.example.org/multi:amd64', [BASE_LAYER]),
        push_image(registry, 'registry.example.org/multi:arm64', [APP_LAYER], architecture='arm64'),
    ]
    push_index(registry, 'registry.example.org/multi:1.0', entries)

    result = convert(
        registry,
        options(
            tmp_path,
            source='registry.example.org/multi:1.0',
            target='registry.example.org/multi:arm64-nydus',
            platforms='linux/arm64',
        ),
    )

    assert [str(image.platform) for image in result.images] == ['linux/arm64']
    # single platform w/o merge-platform yields a plain manifest
    manifest = registry.manifest('registry.example.org/multi:arm64-nydus')
    assert isinstance(manifest, om.OciImageManifest)

    merged = convert(
        registry,
        options(
            tmp_path,
            source='registry.example.org/multi:1.0',
            target='registry.example.org/multi:merged',
            platforms='linux/arm64',
            merge_platform=True,
        ),
    )
    assert len(merged.index.manifests) == 2

    with pytest.raises(cm.ConversionError):
        convert(
            registry,
            options(tmp_path, source='registry.example.org/multi:1.0', platforms='linux/s390x'),
        )


def test_failing_platform_fails_whole_conversion(tmp_path, registry):
    entries = [
        push_image(registry, 'registry.example.org/multi:amd64', [BASE_LAYER]),
        push_image(
            registry,
            'registry.example.org/multi:arm64',
            [APP_LAYER],
            architecture='arm64',
            layer_mimetype=om.OCI_LAYER_TAR_ZSTD_MIME,
        ),
    ]
    push_index(registry, 'registry.example.org/multi:1.0', entries)
    pushed_before = len(registry.pushed_manifests)

    with pytest.raises(cm.PlatformConversionError) as exc_info:
        convert(
            registry,
            options(
                tmp_path,
                source='registry.example.org/multi:1.0',
                target='registry.example.org/multi:1.0-nydus',
                platforms='linux/amd64,linux/arm64',
            ),
        )

    failures = exc_info.value.failures
    assert list(failures) == [om.OciPlatform(os='linux', architecture='arm64')]
    arm64 = om.OciPlatform(os='linux', architecture='arm64')
    assert isinstance(failures[arm64], cm.ConversionError)

    # nothing was published
    assert len(registry.pushed_manifests) == pushed_before
    assert not registry.has_tag('registry.example.org/multi:1.0-nydus')
    assert not registry.has_tag(CACHE)


def test_builder_errors_are_not_retried(tmp_path, registry, source_image):
    source_manifest = registry.manifest(SOURCE)
    builder = FakeBuilder(fail_for={source_manifest.layers[0].digest.removeprefix('sha256:')})

    with pytest.raises(cm.PlatformConversionError) as exc_info:
        convert(registry, options(tmp_path, push_retry_count=5), builder=builder)

    assert builder.invocations == 1
    assert all(isinstance(e, cm.BuilderError) for e in exc_info.value.failures.values())


def test_cancelled_run(tmp_path, registry, source_image):
    cancel = oci.retry.CancelToken()
    cancel.cancel()
    builder = FakeBuilder()

    with pytest.raises(oci.retry.Cancelled):
        convert(registry, options(tmp_path), builder=builder, cancel=cancel)

    assert builder.invocations == 0
    assert not registry.has_tag(TARGET)


def test_metrics_are_written(tmp_path, registry, source_image):
    output_json = tmp_path / 'out' / 'metrics.json'

    result = convert(registry, options(tmp_path, output_json=str(output_json)))

    metrics = json.loads(output_json.read_text())
    assert metrics == result.metrics
    assert metrics['source'] == SOURCE
    assert metrics['platforms'] == ['linux/amd64']
    assert metrics['builder_invocations'] == 2
    assert metrics['cache_misses'] == 2
    assert metrics['pulled_bytes'] == sum(layer.size for layer in registry.manifest(SOURCE).layers)
    assert metrics['pushed_bytes'] > 0
    assert 'build' in metrics['stage_seconds']


def test_localfs_backend(tmp_path, registry, source_image):
    blob_dir = tmp_path / 'blobs'

    result = convert(
        registry,
        options(
            tmp_path,
            backend_type='localfs',
            backend_config=json.dumps({'dir': str(blob_dir)}),
        ),
    )

    manifest = result.images[0].manifest
    # blobs are stored in backend, thus only referenced from bootstrap-layer
    assert len(manifest.layers) == 1
    blob_ids = json.loads(manifest.layers[0].annotations[cm.ANNOTATION_REFERENCE_BLOB_IDS])
    assert len(blob_ids) == 2
    assert sorted(p.name for p in blob_dir.iterdir()) == sorted(blob_ids)

    # cache-records whose blobs vanished from the backend are rebuilt
    for path in blob_dir.iterdir():
        path.unlink()
    builder = FakeBuilder()
    result = convert(
        registry,
        options(
            tmp_path,
            backend_type='localfs',
            backend_config=json.dumps({'dir': str(blob_dir)}),
        ),
        builder=builder,
    )

    assert builder.invocations == 2
    assert result.metrics['cache_hits'] == 0
    assert sorted(p.name for p in blob_dir.iterdir()) == sorted(blob_ids)


def test_switching_to_registry_backend_rebuilds_blobs(tmp_path, registry, source_image):
    convert(
        registry,
        options(
            tmp_path,
            backend_type='localfs',
            backend_config=json.dumps({'dir': str(tmp_path / 'blobs')}),
        ),
    )

    builder = FakeBuilder()
    result = convert(registry, options(tmp_path), builder=builder)

    assert builder.invocations == 2
    assert result.metrics['cache_misses'] == 2

    *blob_layers, _ = registry.manifest(TARGET).layers
    assert len(blob_layers) == 2
    for layer in blob_layers:
        assert registry.head_blob(TARGET, layer.digest).ok

    # the refreshed records are served from cache afterwards
    builder = FakeBuilder()
    convert(registry, options(tmp_path), builder=builder)
    assert builder.invocations == 0
