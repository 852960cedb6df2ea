# Copyright (C) 2016 The OpenTimestamps developers
#
# This file is part of the OpenTimestamps Proof Engine.
#
# It is subject to the license terms in the LICENSE file found in the top-level
# directory of this distribution.
#
# No part of the OpenTimestamps Proof Engine, including this file, may be
# copied, modified, propagated, or distributed except according to the terms
# contained in the LICENSE file.

"""Create, upgrade and verify OpenTimestamps proofs"""

__version__ = '0.1.0'

# Implementation identifier, sent as the User-Agent to remote calendars so
# problems can be tracked down to a specific release.
implementation_identifier = 'OpenTimestamps-ProofEngine/%s' % __version__
