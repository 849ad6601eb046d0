# SPDX-FileCopyrightText: 2024 SAP SE or an SAP affiliate company and Gardener contributors
#
# SPDX-License-Identifier: Apache-2.0

'''
enumeration of (smoke-)test-scenarios as cartesian product of named parameter-dimensions
'''

import collections.abc
import itertools
import typing

PARAM_IMAGE = 'image'
PARAM_FS_VERSION = 'fs_version'
PARAM_OCI_REF = 'oci_ref'


class DescartesItem:
    def __init__(self, values: dict[str, typing.Any]):
        self._values = dict(values)

    def get(self, name: str) -> typing.Any:
        return self._values[name]

    def get_str(self, name: str) -> str:
        value = self.get(name)
        if isinstance(value, bool):
            return str(value).lower()
        return str(value)

    def get_bool(self, name: str) -> bool:
        value = self.get(name)
        if isinstance(value, str):
            return value.lower() in ('true', 'yes', '1')
        return bool(value)

    def name(self) -> str:
        return ','.join(f'{key}={self.get_str(key)}' for key in self._values)

    def as_dict(self) -> dict[str, typing.Any]:
        return dict(self._values)

    def __str__(self):
        return self.name()

    def __repr__(self):
        return f'DescartesItem({self.name()})'


class DescartesIterator:
    '''
    iterates over the cartesian product of all added dimensions (in the order they were added;
    the last dimension varies fastest), omitting combinations matched by any skip-predicate.

    items are created lazily; each call to `iter` starts a fresh iteration.
    '''
    def __init__(self):
        self._dimensions: list[tuple[str, tuple]] = []
        self._skips: list[collections.abc.Callable[[DescartesItem], bool]] = []

    def dimension(self, name: str, values: collections.abc.Iterable) -> 'DescartesIterator':
        if any(name == existing for existing, _ in self._dimensions):
            raise ValueError(f'duplicate dimension {name=}')
        self._dimensions.append((name, tuple(values)))
        return self

    def skip(
        self,
        predicate: collections.abc.Callable[[DescartesItem], bool],
    ) -> 'DescartesIterator':
        self._skips.append(predicate)
        return self

    def __iter__(self) -> collections.abc.Generator[DescartesItem, None, None]:
        if not self._dimensions:
            return

        names = [name for name, _ in self._dimensions]
        for combination in itertools.product(*(values for _, values in self._dimensions)):
            item = DescartesItem(dict(zip(names, combination)))
            if any(skip(item) for skip in self._skips):
                continue
            yield item


def smoke_scenarios(images: collections.abc.Iterable[str]=('nginx:latest',)) -> DescartesIterator:
    return DescartesIterator().dimension(
        PARAM_IMAGE, images,
    ).dimension(
        PARAM_FS_VERSION, ('5', '6'),
    ).dimension(
        PARAM_OCI_REF, (False, True),
    ).skip(
        # reference-mode requires fs-version 6
        lambda item: item.get_str(PARAM_FS_VERSION) == '5' and item.get_bool(PARAM_OCI_REF),
    )


def target_name(item: DescartesItem, source: str | None=None) -> str:
    source = source or item.get_str(PARAM_IMAGE)
    target = f'{source}-nydus-v{item.get_str(PARAM_FS_VERSION)}'
    if item.get_bool(PARAM_OCI_REF):
        target += '-oci-ref'
    return target
