"""
Configuration file handling.

A config file is JSON (or YAML, when PyYAML is installed) holding named
sections of wire layer settings.  A section may inherit from another one
with the "inherits" key.
"""

import json
import logging
import os
from dataclasses import dataclass
from dataclasses import replace
from typing import Any
from typing import Dict
from typing import Optional

from storagewire.lib.buffers import BufferPool
from storagewire.protocol.types import PayloadFormat

log = logging.getLogger(__name__)


def default_config_files():
    """Locations searched, in order, when no config file is named."""
    cfgdir = os.path.join(os.environ.get("HOME", "/"), ".config", "storagewire")
    return [
        os.path.join(cfgdir, "storagewire.conf"),
        os.path.join(cfgdir, "storagewire.yaml"),
        os.path.join(cfgdir, "storagewire.json"),
        "/etc/storagewire/storagewire.conf",
    ]


def config_section(config, section="default", seen=None):
    """
    The settings of ``section`` with everything it inherits merged in,
    nearest section winning.  An inheritance cycle raises ValueError.
    """
    seen = seen or set()
    if section in seen:
        raise ValueError(f"config section {section!r} inherits from itself")
    seen.add(section)
    if section in config and "inherits" in config[section]:
        ret = config_section(config, config[section]["inherits"], seen)
    else:
        ret = {}
    if section in config:
        ret.update(config[section])
    return ret


def _load_yaml(fn):
    ## Late import, yaml is an optional dependency
    try:
        import yaml
    except ImportError:
        log.error(f"config file {fn} is not valid json, and pyyaml is not installed")
        return {}
    try:
        with open(fn, "rb") as config_file:
            return yaml.load(config_file, yaml.SafeLoader) or {}
    except yaml.YAMLError:
        log.error(f"config file {fn} is neither valid json nor yaml.  It will be ignored")
        return {}


def read_config(fn=None):
    """
    Parse the config file ``fn``, or the first existing default location
    when ``fn`` is empty.  Missing or broken files give an empty dict.
    """
    if not fn:
        for candidate in default_config_files():
            cfg = read_config(candidate)
            if cfg:
                log.debug(f"using config file {candidate}")
                return cfg
        return {}

    try:
        with open(fn, "rb") as config_file:
            cfg = json.load(config_file)
    except FileNotFoundError:
        log.info(f"no config file {fn}")
        return {}
    except (json.decoder.JSONDecodeError, UnicodeDecodeError):
        cfg = _load_yaml(fn)
    if not isinstance(cfg, dict):
        log.error(f"config file {fn} does not hold named sections.  It will be ignored")
        return {}
    return cfg


_PAYLOAD_FORMATS = {
    "nometadata": PayloadFormat.NO_METADATA,
    "minimalmetadata": PayloadFormat.MINIMAL_METADATA,
    "fullmetadata": PayloadFormat.FULL_METADATA,
}


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _payload_format(value: Any) -> PayloadFormat:
    if isinstance(value, PayloadFormat):
        return value
    key = str(value).strip().lower().replace("_", "")
    if key in _PAYLOAD_FORMATS:
        return _PAYLOAD_FORMATS[key]
    try:
        return PayloadFormat(value)
    except ValueError:
        raise ValueError(f"unknown payload format {value!r}") from None


@dataclass(frozen=True)
class ProtocolConfig:
    """
    Settings of the wire layer.

    Attributes:
        payload_format: JSON verbosity the table service is asked for
        use_shape_cache: Share derived entity shapes between decoders
        huge_tree: Lift lxml's limits for very large listing documents
        buffer_size: Size of buffers kept in the batch buffer pool
        max_pooled_buffers: Idle buffers the pool keeps around
        base_url: Service endpoint requests are built against
        timeout: Transport timeout handed to the executor, in seconds
    """

    payload_format: PayloadFormat = PayloadFormat.MINIMAL_METADATA
    use_shape_cache: bool = True
    huge_tree: bool = False
    buffer_size: int = 64 * 1024
    max_pooled_buffers: int = 16
    base_url: str = ""
    timeout: float = 30.0

    @classmethod
    def from_section(cls, section: Dict[str, Any]) -> "ProtocolConfig":
        """
        Build a config from a config file section.  Unknown keys are
        ignored with a warning, they may belong to other tools sharing the
        file.
        """
        converters = {
            "payload_format": _payload_format,
            "use_shape_cache": _to_bool,
            "huge_tree": _to_bool,
            "buffer_size": int,
            "max_pooled_buffers": int,
            "base_url": str,
            "timeout": float,
        }
        values = {}
        for key, value in section.items():
            if key == "inherits":
                continue
            if key not in converters:
                log.warning(f"ignoring unknown config key {key}")
                continue
            values[key] = converters[key](value)
        return cls(**values)

    def with_env_overrides(self, environ: Optional[Dict[str, str]] = None) -> "ProtocolConfig":
        """Apply STORAGEWIRE_<SETTING> environment variables on top."""
        if environ is None:
            environ = os.environ
        overrides = {}
        for key in (
            "payload_format",
            "use_shape_cache",
            "huge_tree",
            "buffer_size",
            "max_pooled_buffers",
            "base_url",
            "timeout",
        ):
            env_key = "STORAGEWIRE_" + key.upper()
            if env_key in environ:
                overrides[key] = environ[env_key]
        if not overrides:
            return self
        parsed = ProtocolConfig.from_section(overrides)
        return replace(self, **{key: getattr(parsed, key) for key in overrides})

    def buffer_pool(self) -> BufferPool:
        return BufferPool(buffer_size=self.buffer_size, max_pooled=self.max_pooled_buffers)


def load_protocol_config(fn=None, section="default", environ=None) -> ProtocolConfig:
    """
    Read ``section`` (following "inherits") from the config file ``fn``,
    or from the default locations when ``fn`` is None, then apply
    environment overrides.  A missing file or section gives the defaults.
    """
    config = read_config(fn)
    return ProtocolConfig.from_section(config_section(config, section)).with_env_overrides(environ)
