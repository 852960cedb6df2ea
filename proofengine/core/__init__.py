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

"""Consensus-critical code

Everything under proofengine.core has the property that changes to it may
break proof validation in non-backwards-compatible ways, or make our proofs
unreadable by other OpenTimestamps implementations. We keep such code
separate as a reminder to ourselves to pay extra attention when making
changes.
"""
