# SPDX-FileCopyrightText: 2024 SAP SE or an SAP affiliate company and Gardener contributors
#
# SPDX-License-Identifier: Apache-2.0

'''
verification of converted images

`Checker.check` asserts that a converted (nydus) target-image is structurally equivalent to its
source-image. The source-image is read into an in-memory filesystem-view (unless it is a nydus
image itself, in which case it is mounted); the target-image is mounted through a filesystem-daemon
(nydusd). Views are compared in pre-order, stopping at the first divergence.
'''

import base64
import contextlib
import dataclasses
import functools
import logging
import os
import shutil
import tarfile

import backend
import checker.daemon
import checker.rules
import checker.tree
import converter.model as cm
import oci.auth as oa
import oci.client as oc
import oci.model as om
import oci.platform
import oci.retry
import tarutil

logger = logging.getLogger(__name__)


class CheckFailure(Exception):
    '''
    raised (by `CheckResult.raise_if_not_equivalent`) if target is not equivalent to source
    '''
    def __init__(
        self,
        message: str,
        rule: str | None=None,
        divergence: checker.tree.Divergence | None=None,
    ):
        super().__init__(message)
        self.rule = rule
        self.divergence = divergence


@dataclasses.dataclass(frozen=True)
class CheckResult:
    equivalent: bool
    platform: om.OciPlatform
    divergence: checker.tree.Divergence | None = None
    rule: str | None = None
    message: str | None = None

    def raise_if_not_equivalent(self):
        if self.equivalent:
            return
        raise CheckFailure(
            message=f'{self.platform}: {self.message}',
            rule=self.rule,
            divergence=self.divergence,
        )


@dataclasses.dataclass(frozen=True)
class CheckOptions:
    source: str
    target: str
    source_insecure: bool = False
    target_insecure: bool = False
    plain_http: bool = False
    source_backend_type: str | None = None
    source_backend_config: str | None = None
    source_backend_config_file: str | None = None
    target_backend_type: str | None = None
    target_backend_config: str | None = None
    target_backend_config_file: str | None = None
    multi_platform: bool = False
    platform: str | None = None
    work_dir: str = './output'
    nydus_image: str | None = None
    nydusd: str = 'nydusd'
    docker_cfg: str | None = None

    @property
    def parsed_platform(self) -> om.OciPlatform:
        if not self.platform:
            return oci.platform.host_platform()
        try:
            return oci.platform.parse_platform(self.platform)
        except ValueError as ve:
            raise cm.ConfigurationError(f'invalid {self.platform=}: {ve}') from ve


@dataclasses.dataclass(frozen=True)
class _Image:
    image_reference: om.OciImageReference
    manifest: om.OciImageManifest
    config: dict
    index: om.OciImageManifestList | None = None


def _basic_auth(credentials: oa.OciBasicAuthCredentials) -> str:
    return base64.b64encode(
        f'{credentials.username}:{credentials.password}'.encode('utf-8')
    ).decode('utf-8')


class Checker:
    def __init__(
        self,
        options: CheckOptions,
        daemon: checker.daemon.Daemon | None=None,
        source_client: oc.Client | None=None,
        target_client: oc.Client | None=None,
        credentials_lookup: oa.credentials_lookup | None=None,
        cancel: oci.retry.CancelToken | None=None,
    ):
        self.options = options
        self.platform = options.parsed_platform
        self.cancel = cancel or oci.retry.CancelToken()
        self.daemon = daemon or checker.daemon.Nydusd(nydusd_path=options.nydusd)

        if not credentials_lookup:
            credentials_lookup = oa.docker_credentials_lookup(
                docker_cfg=options.docker_cfg,
                absent_ok=True,
            )
        self.credentials_lookup = credentials_lookup

        def client(insecure: bool) -> oc.Client:
            return oc.Client(
                credentials_lookup=credentials_lookup,
                routes=oc.OciRoutes(plain_http=options.plain_http),
                disable_tls_validation=insecure,
                cancel=self.cancel,
            )

        self.source_client = source_client or client(insecure=options.source_insecure)
        self.target_client = target_client or client(insecure=options.target_insecure)

        try:
            self.source_backend_config = backend.parse_backend_config(
                config_json=options.source_backend_config,
                config_file=options.source_backend_config_file,
            )
            self.target_backend_config = backend.parse_backend_config(
                config_json=options.target_backend_config,
                config_file=options.target_backend_config_file,
            )
        except ValueError as ve:
            raise cm.ConfigurationError(str(ve)) from ve

    def _image(
        self,
        oci_client: oc.Client,
        image_reference: str,
        nydus: bool,
    ) -> _Image:
        '''
        retrieves the image-manifest for the checked platform. If image_reference refers to an
        image-index, entries carrying the nydus os-feature are preferred if `nydus` is truthy
        (and avoided otherwise).
        '''
        image_reference = om.OciImageReference.to_image_ref(image_reference)
        manifest = oci_client.manifest(
            image_reference=image_reference,
            accept=om.MimeTypes.prefer_multiarch,
        )
        index = None

        if isinstance(manifest, om.OciImageManifestList):
            index = manifest
            candidates = [
                entry for entry in index.manifests
                if entry.platform and entry.platform.normalise() == self.platform
            ]
            if not candidates:
                raise om.OciImageNotFoundException(
                    f'{image_reference} has no manifest for {self.platform}'
                )
            candidates.sort(
                key=lambda entry: entry.platform.has_os_feature(cm.NYDUS_OS_FEATURE) != nydus,
            )
            image_reference = om.OciImageReference(
                f'{image_reference.ref_without_tag}@{candidates[0].digest}'
            )
            manifest = oci_client.manifest(image_reference=image_reference)

        config = oci_client.blob(
            image_reference=image_reference,
            digest=manifest.config.digest,
            stream=False,
        ).json()

        return _Image(
            image_reference=image_reference,
            manifest=manifest,
            config=config,
            index=index,
        )

    def _backend_config(
        self,
        oci_client: oc.Client,
        image: _Image,
        backend_type: str | None,
        backend_config: dict | None,
        insecure: bool,
    ) -> dict:
        if backend_type and backend_type != backend.BackendType.REGISTRY.value:
            return backend.new(
                backend_type=backend_type,
                config=backend_config,
            ).nydusd_config()

        nydusd_config = backend.new(
            backend_type=backend.BackendType.REGISTRY,
            oci_client=oci_client,
            image_reference=image.image_reference,
            plain_http=self.options.plain_http,
            insecure=insecure,
        ).nydusd_config()

        credentials = self.credentials_lookup(
            image_reference=str(image.image_reference),
            privileges=oa.Privileges.READONLY,
            absent_ok=True,
        )
        if credentials:
            nydusd_config['config']['auth'] = _basic_auth(credentials)

        return nydusd_config

    def _fetch_bootstrap(self, oci_client: oc.Client, image: _Image, dst_path: str):
        bootstrap = image.manifest.layers[-1]
        res = oci_client.blob(
            image_reference=image.image_reference,
            digest=bootstrap.digest,
            stream=True,
        )
        tarutil.extract_single_file(
            src=tarutil.FilelikeProxy(res.iter_content(chunk_size=4096)),
            arcname=cm.BOOTSTRAP_TAR_PATH,
            dst_path=dst_path,
        )
        logger.info(f'fetched bootstrap of {image.image_reference} to {dst_path}')

    def _mount(
        self,
        stack: contextlib.ExitStack,
        oci_client: oc.Client,
        image: _Image,
        backend_config: dict,
        work_dir: str,
        bootstrap_path: str | None=None,
    ) -> checker.daemon.MountHandle:
        os.makedirs(work_dir)

        if not bootstrap_path:
            bootstrap_path = os.path.join(work_dir, 'image.boot')
            self._fetch_bootstrap(oci_client=oci_client, image=image, dst_path=bootstrap_path)

        self.cancel.raise_if_cancelled()
        handle = self.daemon.mount(
            checker.daemon.MountRequest(
                bootstrap_path=bootstrap_path,
                backend_config=backend_config,
                mountpoint=os.path.join(work_dir, 'mnt'),
                work_dir=work_dir,
                cancel=self.cancel,
            ),
        )
        return stack.enter_context(handle)

    def _layered_tree(self, image: _Image) -> checker.tree.LayeredTree:
        tree = checker.tree.LayeredTree()

        for layer in image.manifest.layers:
            self.cancel.raise_if_cancelled()
            logger.debug(f'applying {layer.digest=} of {image.image_reference}')
            res = self.source_client.blob(
                image_reference=image.image_reference,
                digest=layer.digest,
                stream=True,
            )
            fileobj = tarutil.FilelikeProxy(res.iter_content(chunk_size=tarfile.RECORDSIZE))
            with tarfile.open(fileobj=fileobj, mode='r|*') as tf:
                tree.apply_layer(tf)

        return tree

    def check(self) -> CheckResult:
        '''
        checks target against source for the configured platform. Divergences are reported
        through the returned result, whereas errors (e.g. absent images, failing daemon) are
        raised. Mounts are always released before returning.
        '''
        source = self._image(
            oci_client=self.source_client,
            image_reference=self.options.source,
            nydus=False,
        )
        target = self._image(
            oci_client=self.target_client,
            image_reference=self.options.target,
            nydus=True,
        )
        logger.info(f'checking {target.image_reference} against {source.image_reference}')

        work_dir = os.path.join(
            self.options.work_dir,
            str(self.platform).replace('/', '-'),
        )
        if os.path.exists(work_dir):
            shutil.rmtree(work_dir)
        os.makedirs(work_dir)

        external_backend = bool(self.options.target_backend_type) \
            and self.options.target_backend_type != backend.BackendType.REGISTRY.value
        target_bootstrap = os.path.join(work_dir, 'target.boot')

        with contextlib.ExitStack() as stack:
            stack.callback(shutil.rmtree, work_dir, ignore_errors=True)

            try:
                checker.rules.ManifestRule(
                    platform=self.platform,
                    manifest=target.manifest,
                    config=target.config,
                    index=target.index,
                    multi_platform=self.options.multi_platform,
                ).validate()

                self._fetch_bootstrap(
                    oci_client=self.target_client,
                    image=target,
                    dst_path=target_bootstrap,
                )

                if self.options.nydus_image:
                    bootstrap_blob_ids = functools.partial(
                        checker.rules.inspect_bootstrap,
                        bootstrap_path=target_bootstrap,
                        nydus_image=self.options.nydus_image,
                    )
                else:
                    bootstrap_blob_ids = None

                checker.rules.BootstrapRule(
                    manifest=target.manifest,
                    external_backend=external_backend,
                    bootstrap_blob_ids=bootstrap_blob_ids,
                ).validate()

                if checker.rules.is_nydus_manifest(source.manifest):
                    source_mount = self._mount(
                        stack=stack,
                        oci_client=self.source_client,
                        image=source,
                        backend_config=self._backend_config(
                            oci_client=self.source_client,
                            image=source,
                            backend_type=self.options.source_backend_type,
                            backend_config=self.source_backend_config,
                            insecure=self.options.source_insecure,
                        ),
                        work_dir=os.path.join(work_dir, 'source'),
                    )
                    source_view = checker.tree.walk_directory(source_mount.mountpoint)
                else:
                    source_view = self._layered_tree(image=source)

                target_mount = self._mount(
                    stack=stack,
                    oci_client=self.target_client,
                    image=target,
                    backend_config=self._backend_config(
                        oci_client=self.target_client,
                        image=target,
                        backend_type=self.options.target_backend_type,
                        backend_config=self.target_backend_config,
                        insecure=self.options.target_insecure,
                    ),
                    work_dir=os.path.join(work_dir, 'target'),
                    bootstrap_path=target_bootstrap,
                )

                checker.rules.FilesystemRule(
                    source=source_view,
                    target=checker.tree.walk_directory(target_mount.mountpoint),
                ).validate()
            except checker.rules.RuleViolation as rv:
                logger.error(f'{target.image_reference} is not equivalent to source: {rv}')
                return CheckResult(
                    equivalent=False,
                    platform=self.platform,
                    divergence=rv.divergence,
                    rule=rv.rule,
                    message=str(rv),
                )

        logger.info(f'{target.image_reference} is equivalent to {source.image_reference}')
        return CheckResult(equivalent=True, platform=self.platform)


def check(
    options: CheckOptions,
    daemon: checker.daemon.Daemon | None=None,
    cancel: oci.retry.CancelToken | None=None,
) -> CheckResult:
    return Checker(options=options, daemon=daemon, cancel=cancel).check()
