"""
Missing-code resolution.

Works out which candidate postal codes have no row in the existing
crosswalk, and which of those are structurally usable at all.
"""

import re
from typing import Iterable, List, Optional, Pattern, Tuple, Union

from ons_xwalk.io_utils import read_yaml
from ons_xwalk.paths import CONFIG_DIR

# 3 (FSA) or 6 (full code) alphanumerics, one optional space after the FSA
DEFAULT_VALID_PATTERN = r"^[A-Za-z0-9]{3}(?: ?[A-Za-z0-9]{3})?$"


def _load_postal_code_config() -> dict:
    """Load postal code configuration from params.yml."""
    params_path = CONFIG_DIR / "params.yml"
    if not params_path.exists():
        return {}
    return read_yaml(params_path).get("postal_code", {})


def find_missing_codes(
    candidates: Iterable[str],
    crosswalk_codes: Iterable[str],
) -> List[str]:
    """
    Candidate codes absent from the crosswalk.

    Exact, case-sensitive string match with no normalization. Each missing
    code appears once, in the order it was first seen among the candidates.

    Args:
        candidates: Candidate postal codes (duplicates allowed)
        crosswalk_codes: The existing crosswalk's POSTALCODE column

    Returns:
        List of missing codes (possibly empty)
    """
    known = set(crosswalk_codes)
    missing = []
    seen = set()
    for code in candidates:
        if code in known or code in seen:
            continue
        seen.add(code)
        missing.append(code)
    return missing


def compile_pattern(pattern: Optional[Union[str, Pattern]] = None) -> Pattern:
    """Compile the validity pattern, falling back to config then the default."""
    if pattern is None:
        pattern = _load_postal_code_config().get("valid_pattern", DEFAULT_VALID_PATTERN)
    if isinstance(pattern, str):
        return re.compile(pattern)
    return pattern


def is_valid_postal_code(
    code: object,
    pattern: Optional[Union[str, Pattern]] = None,
) -> bool:
    """
    Whether a postal code is structurally usable for geocoding.

    Non-strings and strings not fully matching the pattern are invalid.
    """
    if not isinstance(code, str):
        return False
    return compile_pattern(pattern).fullmatch(code) is not None


def split_valid_codes(
    codes: Iterable[str],
    pattern: Optional[Union[str, Pattern]] = None,
) -> Tuple[List[str], List[str]]:
    """
    Partition codes into (valid, invalid), preserving order.

    Invalid codes never reach the geocoder.
    """
    compiled = compile_pattern(pattern)
    valid, invalid = [], []
    for code in codes:
        if is_valid_postal_code(code, compiled):
            valid.append(code)
        else:
            invalid.append(code)
    return valid, invalid
