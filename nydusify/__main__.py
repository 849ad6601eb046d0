# SPDX-FileCopyrightText: 2024 SAP SE or an SAP affiliate company and Gardener contributors
#
# SPDX-License-Identifier: Apache-2.0

'''
exposes a CLI for converting container-images into nydus-images (`convert`), and for verifying
converted images against their sources (`check`)

option-values are taken from (in ascending precedence) a YAML-file passed via `--config`,
environment-variables, and command-line-arguments.
'''

import argparse
import dataclasses
import logging
import os
import signal
import sys
import textwrap

import dacite
import yaml

import checker
import converter
import converter.model as cm
import converter.options
import nydusify.log
import oci.retry

logger = logging.getLogger('nydusify')


@dataclasses.dataclass(frozen=True)
class Flag:
    name: str
    field: str
    env: str | None = None
    type: type = str
    help: str | None = None
    aliases: tuple[str, ...] = ()


CONVERT_FLAGS = (
    Flag('source', 'source', 'SOURCE', help='source image-reference'),
    Flag('target', 'target', 'TARGET', help='target image-reference'),
    Flag(
        'target-suffix', 'target_suffix', 'TARGET_SUFFIX',
        help='derive target by appending suffix to source-tag (e.g. `-nydus`)',
    ),
    Flag('source-insecure', 'source_insecure', 'SOURCE_INSECURE', bool),
    Flag('target-insecure', 'target_insecure', 'TARGET_INSECURE', bool),
    Flag('plain-http', 'plain_http', 'PLAIN_HTTP', bool, help='use http instead of https'),
    Flag('work-dir', 'work_dir', 'WORK_DIR'),
    Flag('nydus-image', 'nydus_image', 'NYDUS_IMAGE', help='path to nydus-image binary'),
    Flag(
        'backend-type', 'backend_type', 'BACKEND_TYPE',
        help='where to store data-blobs (registry, oss, s3, localfs)',
    ),
    Flag('backend-config', 'backend_config', 'BACKEND_CONFIG', help='backend-config (JSON)'),
    Flag('backend-config-file', 'backend_config_file', 'BACKEND_CONFIG_FILE'),
    Flag('backend-force-push', 'backend_force_push', 'BACKEND_FORCE_PUSH', bool),
    Flag('build-cache', 'build_cache', 'BUILD_CACHE', help='cache image-reference'),
    Flag(
        'build-cache-tag', 'build_cache_tag', 'BUILD_CACHE_TAG',
        help='cache-tag (cache is stored in target-repository)',
    ),
    Flag('build-cache-version', 'build_cache_version', 'BUILD_CACHE_VERSION'),
    Flag('build-cache-insecure', 'cache_insecure', 'BUILD_CACHE_INSECURE', bool),
    Flag('build-cache-max-records', 'build_cache_max_records', 'BUILD_CACHE_MAX_RECORDS', int),
    Flag(
        'chunk-dict', 'chunk_dict', 'CHUNK_DICT',
        help='bootstrap:registry:<image-ref> or bootstrap:local:<path>',
    ),
    Flag('chunk-dict-insecure', 'chunk_dict_insecure', 'CHUNK_DICT_INSECURE', bool),
    Flag('merge-platform', 'merge_platform', 'MERGE_PLATFORM', bool),
    Flag('all-platforms', 'all_platforms', type=bool),
    Flag('platform', 'platforms', help='comma-separated list of platforms (os/arch[/variant])'),
    Flag('oci-ref', 'oci_ref', 'OCI_REF', bool, help='reference source layers (zero-copy)'),
    Flag('with-referrer', 'with_referrer', 'WITH_REFERRER', bool),
    Flag('oci', 'docker2oci', 'OCI', bool, help='convert docker media-types to OCI'),
    Flag('fs-version', 'fs_version', 'FS_VERSION'),
    Flag(
        'fs-align-chunk', 'fs_align_chunk', 'FS_ALIGN_CHUNK', bool,
        aliases=('backend-aligned-chunk',),
    ),
    Flag('compressor', 'compressor', 'COMPRESSOR'),
    Flag('chunk-size', 'chunk_size', 'FS_CHUNK_SIZE', aliases=('fs-chunk-size',)),
    Flag('batch-size', 'batch_size', 'BATCH_SIZE'),
    Flag('output-json', 'output_json', 'OUTPUT_JSON', help='path to write metrics to'),
    Flag('push-retry-count', 'push_retry_count', 'PUSH_RETRY_COUNT', int),
    Flag('push-retry-delay', 'push_retry_delay', 'PUSH_RETRY_DELAY', help='e.g. 5s, 1m'),
    Flag('max-workers', 'max_workers', type=int, help='max. parallel uploads per platform'),
)

CHECK_FLAGS = (
    Flag('source', 'source', 'SOURCE'),
    Flag('target', 'target', 'TARGET'),
    Flag('source-insecure', 'source_insecure', 'SOURCE_INSECURE', bool),
    Flag('target-insecure', 'target_insecure', 'TARGET_INSECURE', bool),
    Flag('plain-http', 'plain_http', 'PLAIN_HTTP', bool),
    Flag('source-backend-type', 'source_backend_type', 'SOURCE_BACKEND_TYPE'),
    Flag('source-backend-config', 'source_backend_config', 'SOURCE_BACKEND_CONFIG'),
    Flag(
        'source-backend-config-file', 'source_backend_config_file', 'SOURCE_BACKEND_CONFIG_FILE',
    ),
    Flag('target-backend-type', 'target_backend_type', 'BACKEND_TYPE'),
    Flag('target-backend-config', 'target_backend_config', 'BACKEND_CONFIG'),
    Flag('target-backend-config-file', 'target_backend_config_file', 'BACKEND_CONFIG_FILE'),
    Flag(
        'multi-platform', 'multi_platform', 'MULTI_PLATFORM', bool,
        help='target is expected to contain both OCI and nydus manifests',
    ),
    Flag('platform', 'platform', help='platform to check (os/arch[/variant])'),
    Flag('work-dir', 'work_dir', 'WORK_DIR'),
    Flag('nydus-image', 'nydus_image', 'NYDUS_IMAGE'),
    Flag('nydusd', 'nydusd', 'NYDUSD', help='path to nydusd binary'),
)


def parse_bool(value: str | bool) -> bool:
    if isinstance(value, bool):
        return value
    value = value.strip().lower()
    if value in ('1', 'true', 'yes', 'on'):
        return True
    if value in ('', '0', 'false', 'no', 'off'):
        return False
    raise ValueError(f'not a boolean: {value=}')


def _add_flags(parser: argparse.ArgumentParser, flags: tuple[Flag, ...]):
    for flag in flags:
        names = [f'--{flag.name}'] + [f'--{alias}' for alias in flag.aliases]
        help = flag.help
        if flag.env:
            help = f'{help or ""} [env: {flag.env}]'.strip()

        if flag.type is bool:
            parser.add_argument(
                *names,
                dest=flag.field,
                action='store_true',
                default=None,
                help=help,
            )
        else:
            parser.add_argument(
                *names,
                dest=flag.field,
                type=flag.type,
                default=None,
                help=help,
            )


def _read_config(path: str | None) -> dict:
    if not path:
        return {}

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    if not isinstance(raw, dict):
        raise cm.ConfigurationError(f'{path=} must contain a mapping')

    return {key.replace('-', '_'): value for key, value in raw.items()}


def collect_values(
    parsed: argparse.Namespace,
    flags: tuple[Flag, ...],
    environ: dict[str, str]=os.environ,
) -> dict:
    '''
    merges option-values from config-file, environment and command-line (later wins)
    '''
    values = _read_config(getattr(parsed, 'config', None))

    for flag in flags:
        if flag.env and (env_value := environ.get(flag.env)) not in (None, ''):
            try:
                values[flag.field] = parse_bool(env_value) if flag.type is bool \
                    else flag.type(env_value)
            except ValueError as ve:
                raise cm.ConfigurationError(f'invalid value for {flag.env}: {ve}') from ve

        if (value := getattr(parsed, flag.field, None)) is not None:
            values[flag.field] = value

    if (docker_cfg := getattr(parsed, 'docker_cfg', None)):
        values['docker_cfg'] = docker_cfg

    return values


def _from_dict(data_class, values: dict):
    try:
        return dacite.from_dict(
            data_class=data_class,
            data=values,
            config=dacite.Config(
                cast=[str],
                strict=True,
            ),
        )
    except dacite.DaciteError as de:
        raise cm.ConfigurationError(f'invalid configuration: {de}') from de


def read_prefetch_patterns(parsed: argparse.Namespace, stdin=sys.stdin) -> str:
    prefetch_dir = parsed.prefetch_dir or os.environ.get('PREFETCH_DIR')
    from_stdin = parsed.prefetch_patterns \
        or parse_bool(os.environ.get('PREFETCH_PATTERNS', 'false'))

    if prefetch_dir and from_stdin:
        raise cm.ConfigurationError('--prefetch-dir conflicts with --prefetch-patterns')

    if from_stdin:
        patterns = stdin.read()
    else:
        patterns = prefetch_dir

    return patterns or '/'


def _install_signal_handlers(cancel: oci.retry.CancelToken):
    def handler(signum, frame):
        logger.warning(f'received signal {signal.Signals(signum).name} - cancelling')
        cancel.cancel()

    signal.signal(signal.SIGINT, handler)
    signal.signal(signal.SIGTERM, handler)


def convert(parsed: argparse.Namespace, cancel: oci.retry.CancelToken) -> int:
    values = collect_values(parsed=parsed, flags=CONVERT_FLAGS)
    if parsed.prefetch_dir or parsed.prefetch_patterns or not 'prefetch_patterns' in values:
        values['prefetch_patterns'] = read_prefetch_patterns(parsed=parsed)

    options = _from_dict(converter.options.Options, values)

    result = converter.convert(options=options, cancel=cancel)
    logger.info(f'converted {options.source} to {result.target}@{result.digest}')

    if not parsed.check:
        return 0

    failed = False
    for image in result.images:
        check_result = checker.Checker(
            options=checker.CheckOptions(
                source=options.source,
                target=result.target,
                source_insecure=options.source_insecure,
                target_insecure=options.target_insecure,
                plain_http=options.plain_http,
                target_backend_type=options.backend_type,
                target_backend_config=options.backend_config,
                target_backend_config_file=options.backend_config_file,
                multi_platform=options.merge_platform,
                platform=str(image.platform),
                work_dir=os.path.join(options.work_dir, 'check'),
                nydus_image=options.nydus_image,
                docker_cfg=options.docker_cfg,
            ),
            cancel=cancel,
        ).check()
        if not check_result.equivalent:
            failed = True

    return 1 if failed else 0


def check(parsed: argparse.Namespace, cancel: oci.retry.CancelToken) -> int:
    values = collect_values(parsed=parsed, flags=CHECK_FLAGS)
    values.setdefault('work_dir', './output')
    values.setdefault('nydus_image', 'nydus-image')
    options = _from_dict(checker.CheckOptions, values)

    result = checker.Checker(options=options, cancel=cancel).check()
    if not result.equivalent:
        logger.error(f'check failed for {result.platform}: {result.message}')
        return 1

    return 0


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='nydusify',
        description='converts container-images into nydus-images',
    )
    parser.add_argument(
        '--debug', '-D',
        action='store_true',
        default=False,
        help='enable debug-output (overrides --log-level)',
    )
    parser.add_argument(
        '--log-level', '-l',
        default='info',
        help='one of panic, fatal, error, warn, info, debug, trace',
    )
    parser.add_argument(
        '--log-file',
        default=None,
        help='append log-output to file (instead of stderr)',
    )
    parser.add_argument(
        '--config',
        default=None,
        help='YAML-file w/ option-values (keys named like options)',
    )
    parser.add_argument(
        '--docker-cfg',
        default=None,
        help='docker-config to read registry-credentials from (default: ~/.docker/config.json)',
    )

    subcmd_parsers = parser.add_subparsers(dest='command', required=True)

    convert_parser = subcmd_parsers.add_parser(
        'convert',
        help='convert source-image into nydus-image',
    )
    convert_parser.set_defaults(callable=convert)
    _add_flags(convert_parser, CONVERT_FLAGS)
    convert_parser.add_argument(
        '--prefetch-dir',
        default=None,
        help='directory to prefetch [env: PREFETCH_DIR]',
    )
    convert_parser.add_argument(
        '--prefetch-patterns',
        action='store_true',
        default=False,
        help=textwrap.dedent('''\
            read prefetch-patterns (one per line) from stdin; conflicts with --prefetch-dir
            [env: PREFETCH_PATTERNS]
        '''),
    )
    convert_parser.add_argument(
        '--check',
        action='store_true',
        default=False,
        help='check converted image(s) against source after conversion',
    )

    check_parser = subcmd_parsers.add_parser(
        'check',
        help='check nydus-image against its source-image',
    )
    check_parser.set_defaults(callable=check)
    _add_flags(check_parser, CHECK_FLAGS)

    return parser


def main(argv: list[str] | None=None) -> int:
    parser = create_parser()
    parsed = parser.parse_args(argv)

    nydusify.log.configure_default_logging(
        stdout_level=nydusify.log.parse_level(parsed.log_level, debug=parsed.debug),
        log_file=parsed.log_file,
    )

    cancel = oci.retry.CancelToken()
    _install_signal_handlers(cancel=cancel)

    try:
        return parsed.callable(parsed=parsed, cancel=cancel)
    except Exception as e:
        logger.debug('stacktrace:', exc_info=True)
        logger.error(f'{parsed.command} failed: {e}')
        return 1


if __name__ == '__main__':
    sys.exit(main())
