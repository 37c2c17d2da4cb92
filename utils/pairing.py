#!/usr/bin/env python3
"""
Shared pairing dictionary for map comparison encoding.

Comparison map encoding (reference, candidate):
- 0: No Event    - neither map records an event in the year
- 1: False Alarm - candidate records an event, reference does not
- 2: Miss        - reference records an event, candidate does not
- 3: Hit         - both maps record an event
- 255: NoData    - outside the validity mask (on disk only)
"""
import os
from enum import IntEnum


class AgreementClass(IntEnum):
    NO_EVENT = 0
    FALSE_ALARM = 1
    MISS = 2
    HIT = 3


# Reference bit is weighted so the packed code stays decodable (10 * ref + cand)
REFERENCE_WEIGHT = 10

# Pairing dictionary for boolean layers (0=no event, 1=event)
AGREEMENT_PAIRING_DICT = {
    (0, 0): AgreementClass.NO_EVENT,  # neither map
    (0, 1): AgreementClass.FALSE_ALARM,  # candidate only
    (1, 0): AgreementClass.MISS,  # reference only
    (1, 1): AgreementClass.HIT,  # both maps
}

# Packed code -> class, i.e. {0: NO_EVENT, 1: FALSE_ALARM, 10: MISS, 11: HIT}
AGREEMENT_CODE_DICT = {
    REFERENCE_WEIGHT * ref + cand: agreement_class
    for (ref, cand), agreement_class in AGREEMENT_PAIRING_DICT.items()
}

COMPARISON_NODATA = int(os.getenv("COMPARISON_NODATA_VALUE", "255"))
