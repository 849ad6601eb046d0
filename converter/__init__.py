# SPDX-FileCopyrightText: 2024 SAP SE or an SAP affiliate company and Gardener contributors
#
# SPDX-License-Identifier: Apache-2.0

import converter.builder
import converter.options
import converter.orchestrator
import oci.retry


def convert(
    options: converter.options.Options,
    builder: converter.builder.Builder=None,
    client_factory: converter.orchestrator.ClientFactory=None,
    cancel: oci.retry.CancelToken=None,
) -> converter.orchestrator.ConversionResult:
    '''
    converts the source-image specified in `options` into a nydus-image, and pushes it to the
    specified target. Options are validated before any other work is done.
    '''
    options = options.validate()

    return converter.orchestrator.Orchestrator(
        options=options,
        builder=builder,
        client_factory=client_factory,
        cancel=cancel,
    ).run()
