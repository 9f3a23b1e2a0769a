import os
import copy
import yaml

DEFAULT_CONFIG = {
    "logging_level": "INFO",
    "library": {
        "depth_limit": 2,
        "max_workers": 4,
        "settings_path": "~/.photoindex/settings.db",
        "ignore_patterns": ["._*"],  # glob patterns, on top of dot-hidden entries
        "hide_raw_companion_jpegs": True,
    },
    "watcher": {
        "enabled": True,
        "debounce_seconds": 2.0,
    },
    "thumbnails": {
        "size": 256,
        "max_workers": 4,
        "prefetch": True,  # request thumbnails for every photo when a folder is selected
    },
}


def _default_config_path() -> str:
    xdg_config_home = os.environ.get("XDG_CONFIG_HOME", os.path.expanduser("~/.config"))
    return os.path.join(xdg_config_home, "photoindex", "config.yaml")


def _deep_merge(base: dict, override: dict) -> dict:
    result = copy.deepcopy(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


class ConfigManager:
    def __init__(self, config_path: str | None = None):
        self.config_path = config_path or _default_config_path()
        self.config = self.load_config()

    def load_config(self) -> dict:
        try:
            with open(self.config_path, "r") as f:
                user_config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            defaults = copy.deepcopy(DEFAULT_CONFIG)
            self.save_config(defaults)
            return defaults
        except yaml.YAMLError as exc:
            raise ValueError(f"Malformed config at {self.config_path}") from exc
        if not isinstance(user_config, dict):
            raise ValueError(f"Config at {self.config_path} must be a mapping")
        return _deep_merge(DEFAULT_CONFIG, user_config)

    def save_config(self, config):
        directory = os.path.dirname(self.config_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.config_path, "w") as f:
            yaml.safe_dump(config, f, default_flow_style=False)

    def get(self, key, default=None):
        value = self.config
        for k in key.split('.'):
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default
        return value if value is not None else default

    def set(self, key, value):
        keys = key.split('.')
        node = self.config
        for k in keys[:-1]:
            node = node.setdefault(k, {})
        node[keys[-1]] = value
        self.save_config(self.config)

    @property
    def logging_level(self):
        return self.get("logging_level", "INFO")

    @property
    def settings_path(self) -> str:
        return os.path.expanduser(self.get("library.settings_path", DEFAULT_CONFIG["library"]["settings_path"]))
