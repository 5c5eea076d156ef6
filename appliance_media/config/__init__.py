from .settings import (
    SUPPORTED_COMPATIBILITY_REVISION,
    get_int,
    get_list,
    get_path,
    get_setting,
    load_settings,
)

__all__ = [
    "SUPPORTED_COMPATIBILITY_REVISION",
    "get_int",
    "get_list",
    "get_path",
    "get_setting",
    "load_settings",
]
