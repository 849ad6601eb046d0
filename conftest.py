# SPDX-FileCopyrightText: 2024 SAP SE or an SAP affiliate company and Gardener contributors
#
# SPDX-License-Identifier: Apache-2.0

import sys
import os

repo_root = os.path.abspath(os.path.dirname(__file__))

sys.path.insert(1, repo_root)
sys.path.insert(1, os.path.join(repo_root, 'test'))
