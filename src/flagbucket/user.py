from __future__ import annotations
import datetime
import platform
import socket
from typing import Any, TypeAlias

from . import __version__

CustomData: TypeAlias = dict[str, Any]


def validate_custom_data(data: CustomData | None, name: str = "custom data"):
    """
    Custom data values are limited to the JSON scalar types since they are
    compared against JSON typed filter values.
    """
    if data is None:
        return
    if not isinstance(data, dict):
        raise TypeError(f"{name} must be a dict, not {type(data).__name__}")
    for k, v in data.items():
        if not isinstance(k, str):
            raise TypeError(f"{name} key must be a string, not {type(k).__name__}")
        if not isinstance(v, (str, int, float, bool, type(None))):
            raise TypeError(f"{name} value must be a string, int, float, bool, None, not {type(v).__name__}")


class PlatformData:
    __slots__ = (
        "sdk_type",
        "sdk_version",
        "platform",
        "platform_version",
        "device_model",
        "hostname",
    )
    sdk_type: str
    sdk_version: str
    platform: str
    platform_version: str
    device_model: str
    hostname: str

    def __init__(
        self,
        sdk_type: str = "",
        sdk_version: str = "",
        platform: str = "",
        platform_version: str = "",
        device_model: str = "",
        hostname: str = "",
    ):
        self.sdk_type = sdk_type
        self.sdk_version = sdk_version
        self.platform = platform
        self.platform_version = platform_version
        self.device_model = device_model
        self.hostname = hostname

    @staticmethod
    def default() -> PlatformData:
        return PlatformData(
            sdk_type="server",
            sdk_version=__version__,
            platform="Python",
            platform_version=platform.python_version(),
            hostname=socket.gethostname(),
        )

    def to_dict(self) -> dict[str, str]:
        return {
            "sdkType": self.sdk_type,
            "sdkVersion": self.sdk_version,
            "platform": self.platform,
            "platformVersion": self.platform_version,
            "hostname": self.hostname,
        }


class User:
    """
    The user record provided by the hosting application.
    """

    __slots__ = (
        "user_id",
        "email",
        "name",
        "language",
        "country",
        "app_version",
        "app_build",
        "device_model",
        "custom_data",
        "private_custom_data",
        "created_date",
        "last_seen_date",
    )
    user_id: str
    email: str
    name: str
    language: str
    country: str
    app_version: str
    app_build: float | None
    device_model: str
    custom_data: CustomData
    private_custom_data: CustomData
    created_date: datetime.datetime | None
    last_seen_date: datetime.datetime | None

    def __init__(
        self,
        user_id: str,
        email: str = "",
        name: str = "",
        language: str = "",
        country: str = "",
        app_version: str = "",
        app_build: float | None = None,
        device_model: str = "",
        custom_data: CustomData | None = None,
        private_custom_data: CustomData | None = None,
        created_date: datetime.datetime | None = None,
        last_seen_date: datetime.datetime | None = None,
    ):
        if not isinstance(user_id, str):
            raise TypeError(f"user_id must be a string, not {type(user_id).__name__}")
        for field, value in (
            ("email", email),
            ("name", name),
            ("language", language),
            ("country", country),
            ("app_version", app_version),
            ("device_model", device_model),
        ):
            if not isinstance(value, str):
                raise TypeError(f"{field} must be a string, not {type(value).__name__}")
        if app_build is not None and (isinstance(app_build, bool) or not isinstance(app_build, (int, float))):
            raise TypeError(f"app_build must be a number or None, not {type(app_build).__name__}")
        for field, value in (("created_date", created_date), ("last_seen_date", last_seen_date)):
            if value is not None and not isinstance(value, datetime.datetime):
                raise TypeError(f"{field} must be a datetime or None, not {type(value).__name__}")
        validate_custom_data(custom_data, "custom_data")
        validate_custom_data(private_custom_data, "private_custom_data")
        self.user_id = user_id
        self.email = email
        self.name = name
        self.language = language
        self.country = country
        self.app_version = app_version
        self.app_build = app_build
        self.device_model = device_model
        self.custom_data = dict(custom_data or {})
        self.private_custom_data = dict(private_custom_data or {})
        self.created_date = created_date
        self.last_seen_date = last_seen_date

    def populate(self, platform_data: PlatformData | None = None, now: datetime.datetime | None = None) -> PopulatedUser:
        return PopulatedUser(self, platform_data or PlatformData(), now)


class PopulatedUser:
    """
    A user combined with the platform data of the running SDK. This is what
    filters are evaluated against and what is reported with events.
    """

    __slots__ = ("user", "platform_data", "custom_data", "created_date", "last_seen_date")
    user: User
    platform_data: PlatformData
    custom_data: CustomData
    created_date: datetime.datetime
    last_seen_date: datetime.datetime

    def __init__(self, user: User, platform_data: PlatformData, now: datetime.datetime | None = None):
        now = now or datetime.datetime.now(datetime.timezone.utc)
        self.user = user
        self.platform_data = platform_data
        self.custom_data = dict(user.custom_data)
        self.created_date = user.created_date or now
        self.last_seen_date = user.last_seen_date or now

    def merge_client_custom_data(self, data: CustomData | None):
        """
        Fill in client custom data for keys the user sets in neither its
        custom data nor its private custom data.
        """
        for k, v in (data or {}).items():
            if k not in self.custom_data and k not in self.user.private_custom_data:
                self.custom_data[k] = v

    @property
    def user_id(self) -> str:
        return self.user.user_id

    @property
    def email(self) -> str:
        return self.user.email

    @property
    def country(self) -> str:
        return self.user.country

    @property
    def app_version(self) -> str:
        return self.user.app_version

    @property
    def device_model(self) -> str:
        # User provided device model takes precedence over the platform's.
        return self.user.device_model or self.platform_data.device_model

    @property
    def platform(self) -> str:
        return self.platform_data.platform

    @property
    def platform_version(self) -> str:
        return self.platform_data.platform_version

    def combined_custom_data(self) -> CustomData:
        """
        Custom data merged with private custom data. Private values win.
        """
        return {**self.custom_data, **self.user.private_custom_data}

    def to_dict(self) -> dict[str, Any]:
        """
        Wire representation of the user. Private custom data is never
        reported.
        """
        u = self.user
        d: dict[str, Any] = {
            "user_id": u.user_id,
            "createdDate": self.created_date.isoformat(),
            "lastSeenDate": self.last_seen_date.isoformat(),
            **self.platform_data.to_dict(),
        }
        for key, value in (
            ("email", u.email),
            ("name", u.name),
            ("language", u.language),
            ("country", u.country),
            ("appVersion", u.app_version),
            ("appBuild", u.app_build),
            ("deviceModel", self.device_model),
            ("customData", self.custom_data),
        ):
            if value:
                d[key] = value
        return d
