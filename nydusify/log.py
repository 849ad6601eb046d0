# SPDX-FileCopyrightText: 2024 SAP SE or an SAP affiliate company and Gardener contributors
#
# SPDX-License-Identifier: Apache-2.0

from copy import copy
import logging
import sys

logger = logging.getLogger(__name__)

# log-level-names as understood by `--log-level`
LOG_LEVELS = {
    'panic': logging.CRITICAL,
    'fatal': logging.CRITICAL,
    'error': logging.ERROR,
    'warn': logging.WARNING,
    'warning': logging.WARNING,
    'info': logging.INFO,
    'debug': logging.DEBUG,
    'trace': logging.DEBUG,
}


class CCFormatter(logging.Formatter):
    level_colors = {
        logging.DEBUG: lambda level_name:
        f'{Bcolors.BOLD}{Bcolors.BLUE}{level_name}{Bcolors.RESET_ALL}',
        logging.INFO: lambda level_name:
        f'{Bcolors.BOLD}{Bcolors.GREEN}{level_name}{Bcolors.RESET_ALL}',
        logging.WARNING: lambda level_name:
        f'{Bcolors.BOLD}{Bcolors.YELLOW}{level_name}{Bcolors.RESET_ALL}',
        logging.ERROR: lambda level_name:
        f'{Bcolors.BOLD}{Bcolors.RED}{level_name}{Bcolors.RESET_ALL}',
        logging.CRITICAL: lambda level_name:
        f'{Bcolors.BOLD}{Bcolors.RED}{level_name}{Bcolors.RESET_ALL}',
    }

    def __init__(self, *args, colored: bool | None=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.colored = colored

    def color_level_name(self, level_name, level_number):
        def default(level_name):
            return str(level_name)

        func = self.level_colors.get(level_number, default)
        return func(level_name)

    def formatMessage(self, record):
        record_copy = copy(record)
        levelname = record_copy.levelname

        colored = self.colored
        if colored is None:
            colored = sys.stdout.isatty()

        if colored:
            levelname = self.color_level_name(levelname, record_copy.levelno)
        record_copy.__dict__['levelprefix'] = levelname
        return super().formatMessage(record_copy)


class Bcolors:
    RESET_ALL = '\033[0m'
    BOLD = '\033[1m'
    RED = '\033[31m'
    GREEN = '\033[32m'
    YELLOW = '\033[33m'
    BLUE = '\033[34m'


def parse_level(level_name: str | None, debug: bool=False) -> int:
    '''
    maps the given level-name (see `LOG_LEVELS`) to a logging-level; `debug` overrides any
    passed level-name. Unknown names fall back to INFO (a warning is logged).
    '''
    if debug:
        return logging.DEBUG
    if not level_name:
        return logging.INFO

    if (level := LOG_LEVELS.get(level_name.strip().lower())) is None:
        logger.warning(f'failed to parse log-level {level_name!r} - falling back to info')
        return logging.INFO

    return level


def configure_default_logging(
    stdout_level=None,
    force=True,
    print_thread_id=False,
    log_file: str | None=None,
    custom_format_string: str = '',
):
    if not stdout_level:
        stdout_level = logging.INFO

    # make sure to have a clean root logger (in case setup is called multiple times)
    if force:
        handlers = list(logging.root.handlers)
        for h in handlers:
            logging.root.removeHandler(h)
            h.close()

    handler = None
    colored = None
    log_file_error = None
    if log_file:
        try:
            handler = logging.FileHandler(log_file, mode='a')
            colored = False
        except OSError as oe:
            log_file_error = oe

    if not handler:
        handler = logging.StreamHandler()
    handler.setLevel(stdout_level)

    fmt = custom_format_string or default_fmt_string(print_thread_id=print_thread_id)
    handler.setFormatter(CCFormatter(fmt=fmt, colored=colored))

    logging.root.addHandler(hdlr=handler)
    logging.root.setLevel(level=stdout_level)

    if log_file_error:
        logger.warning(f'failed to open {log_file=}: {log_file_error} - logging to stderr')

    # too verbose
    logging.getLogger('urllib3').setLevel(logging.WARNING)
    logging.getLogger('botocore').setLevel(logging.WARNING)
    logging.getLogger('oss2').setLevel(logging.WARNING)


def default_fmt_string(print_thread_id: bool=False):
    ptid = print_thread_id
    return f'%(asctime)s [%(levelprefix)s] {"TID:%(thread)d " if ptid else ""}%(name)s: %(message)s'
