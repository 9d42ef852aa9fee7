"""Mapping layer between flat PipelineSettings fields and sectioned TOML format.

PipelineSettings remains a flat Pydantic model. This module provides two functions:
- flat_to_sectioned(): flat dict -> sectioned dict (for TOML save)
- sectioned_to_flat(): sectioned dict -> flat dict (for TOML load)
"""

from __future__ import annotations

# {section_name: {flat_field_name: short_name_in_toml}}
SECTION_MAP: dict[str, dict[str, str]] = {
    'download': {
        'batch_size': 'batch_size',
        'max_attempts': 'max_attempts',
        'retry_delays_s': 'retry_delays_s',
        'retry_rounds': 'retry_rounds',
        'round_cooldown_s': 'round_cooldown_s',
        'batch_pause_s': 'batch_pause_s',
    },
    'http': {
        'http_timeout_s': 'timeout_s',
        'max_connections': 'max_connections',
        'max_connections_per_host': 'max_connections_per_host',
        'user_agent': 'user_agent',
        'http_cache_enabled': 'cache_enabled',
        'http_cache_expire_hours': 'cache_expire_hours',
    },
    'store': {
        'convert_batch_size': 'batch_size',
        'store_extension': 'extension',
    },
}

# Reverse index: flat_field -> (section, short_name)
_FLAT_TO_SECTION: dict[str, tuple[str, str]] = {}
for _section, _fields in SECTION_MAP.items():
    for _flat, _short in _fields.items():
        _FLAT_TO_SECTION[_flat] = (_section, _short)

# Reverse index: (section, short_name) -> flat_field
_SECTION_TO_FLAT: dict[str, dict[str, str]] = {}
for _section, _fields in SECTION_MAP.items():
    _SECTION_TO_FLAT[_section] = {v: k for k, v in _fields.items()}


def flat_to_sectioned(flat: dict) -> dict:
    """Convert flat PipelineSettings dict to sectioned dict for TOML output.

    ``None`` values are dropped since TOML has no null.
    """
    result: dict = {'common': {}}
    for key, value in flat.items():
        if value is None:
            continue
        if isinstance(value, tuple):
            value = list(value)
        if key in _FLAT_TO_SECTION:
            section, short_name = _FLAT_TO_SECTION[key]
            result.setdefault(section, {})[short_name] = value
        else:
            result['common'][key] = value
    return result


def sectioned_to_flat(data: dict) -> dict:
    """Convert sectioned TOML dict to flat dict for PipelineSettings validation."""
    flat: dict = {}
    for key, value in data.items():
        if isinstance(value, dict) and key in _SECTION_TO_FLAT:
            # Known section: expand short names to flat names
            mapping = _SECTION_TO_FLAT[key]
            for short_name, field_value in value.items():
                flat[mapping.get(short_name, short_name)] = field_value
        elif isinstance(value, dict):
            # 'common' or an unknown section: keys pass through
            flat.update(value)
        else:
            # Top-level key (flat TOML)
            flat[key] = value
    return flat
