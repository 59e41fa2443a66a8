# Copyright © The Gatehouse Developers
# See the AUTHORS file at the top-level directory of this distribution
#
# This file is part of Gatehouse. It is subject to the license terms
# in the LICENSE file found in the top-level directory of this
# distribution. No part of Gatehouse, including this file, may be copied,
# modified, propagated, or distributed except according to the terms
# contained in the LICENSE file.

"""Settings of the Gatehouse Django project."""
