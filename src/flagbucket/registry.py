from __future__ import annotations
import logging
import threading

from .bucketing import ConfigMissingError
from .config import Configuration
from .user import CustomData, validate_custom_data


logger = logging.getLogger(__name__)


class _Entry:
    __slots__ = ("config", "raw")
    config: Configuration
    raw: bytes

    def __init__(self, config: Configuration, raw: bytes):
        self.config = config
        self.raw = raw


class ConfigRegistry:
    """
    Compiled configs and client custom data keyed by SDK key. Configs are
    replaced wholesale, never mutated, so a reference returned by get stays
    valid and consistent while a newer config is swapped in. The registry is
    thread-safe.
    """

    def __init__(self):
        self._mu = threading.RLock()
        self._configs: dict[str, _Entry] = {}
        self._client_custom_data: dict[str, CustomData] = {}

    def set(self, raw: bytes | str, sdk_key: str, etag: str = "", ray_id: str = "", last_modified: str = "") -> Configuration:
        """
        Compile the raw document and make it the current config of the SDK
        key. A document that fails to compile leaves the current config in
        place.
        """
        if isinstance(raw, str):
            raw = raw.encode("utf-8")
        config = Configuration.from_json(raw, etag=etag, ray_id=ray_id, last_modified=last_modified)
        with self._mu:
            self._configs[sdk_key] = _Entry(config, raw)
        logger.debug("Config for %s set, etag %r", sdk_key, etag)
        return config

    def _entry(self, sdk_key: str) -> _Entry:
        with self._mu:
            entry = self._configs.get(sdk_key)
        if entry is None:
            raise ConfigMissingError(f"config not loaded for sdk key {sdk_key}")
        return entry

    def get(self, sdk_key: str) -> Configuration:
        return self._entry(sdk_key).config

    def has_config(self, sdk_key: str) -> bool:
        with self._mu:
            return sdk_key in self._configs

    def get_raw_bytes(self, sdk_key: str) -> bytes:
        return self._entry(sdk_key).raw

    def get_etag(self, sdk_key: str) -> str:
        return self._entry(sdk_key).config.etag

    def get_ray_id(self, sdk_key: str) -> str:
        return self._entry(sdk_key).config.ray_id

    def get_last_modified(self, sdk_key: str) -> str:
        return self._entry(sdk_key).config.last_modified

    def set_client_custom_data(self, sdk_key: str, data: CustomData):
        """
        Set custom data applied to every user of the SDK key. Values set on a
        user take precedence.
        """
        validate_custom_data(data, "client custom data")
        data = dict(data)
        with self._mu:
            self._client_custom_data[sdk_key] = data

    def get_client_custom_data(self, sdk_key: str) -> CustomData:
        with self._mu:
            return self._client_custom_data.get(sdk_key, {})

    def clear(self):
        with self._mu:
            self._configs.clear()
            self._client_custom_data.clear()
