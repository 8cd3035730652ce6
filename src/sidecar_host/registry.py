"""Sidecar registry - named launch configurations

Sidecars can be registered by hand or discovered from a hosts directory where
every subdirectory holds one entry-point script:

```
hosts/
  node/host.js      -> "node"   runs `node hosts/node/host.js`
  python/host.py    -> "python" runs `python hosts/python/host.py`
```
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

from sidecar_host.errors import RegistryError
from sidecar_host.process import SidecarSpec

logger = logging.getLogger(__name__)

# Entry-point filename -> interpreter, in lookup order
KNOWN_HOSTS = (
    ("host.js", "node"),
    ("host.py", "python"),
    ("host.sh", "bash"),
)


@dataclass
class SidecarConfig:
    """A named, storable sidecar launch configuration"""
    name: str
    command: str
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    working_dir: Optional[str] = None

    def validate(self) -> None:
        """Raises RegistryError if name or command is empty"""
        if not self.name:
            raise RegistryError("sidecar name must not be empty")
        if not self.command:
            raise RegistryError("sidecar command must not be empty")

    def to_spec(self) -> SidecarSpec:
        return SidecarSpec(
            command=self.command,
            args=list(self.args),
            env=dict(self.env),
            cwd=self.working_dir,
        )

    @classmethod
    def from_dict(cls, data: Dict) -> "SidecarConfig":
        return cls(
            name=data.get("name", ""),
            command=data.get("command", ""),
            args=list(data.get("args", [])),
            env=dict(data.get("env", {})),
            working_dir=data.get("working_dir"),
        )

    def to_dict(self) -> Dict:
        result = {"name": self.name, "command": self.command, "args": list(self.args), "env": dict(self.env)}
        if self.working_dir is not None:
            result["working_dir"] = self.working_dir
        return result


class SidecarRegistry:
    """Sidecar configurations by unique name"""

    def __init__(self):
        self._sidecars: Dict[str, SidecarConfig] = {}

    def register(self, config: SidecarConfig) -> None:
        """Add a sidecar

        Raises:
            RegistryError: If the config is invalid or the name is taken
        """
        config.validate()
        if config.name in self._sidecars:
            raise RegistryError(f"sidecar '{config.name}' is already registered")
        self._sidecars[config.name] = config

    def get(self, name: str) -> Optional[SidecarConfig]:
        return self._sidecars.get(name)

    def list(self) -> List[str]:
        """Registered names, sorted"""
        return sorted(self._sidecars)

    def remove(self, name: str) -> bool:
        """Remove a sidecar; True if it was registered"""
        return self._sidecars.pop(name, None) is not None

    def __contains__(self, name: str) -> bool:
        return name in self._sidecars

    def __len__(self) -> int:
        return len(self._sidecars)

    @classmethod
    def from_config_dir(cls, path: Union[str, Path]) -> "SidecarRegistry":
        """Discover sidecars from a hosts directory

        Each subdirectory containing a known entry-point script becomes a
        sidecar named after the directory. The first script found in
        KNOWN_HOSTS order wins.

        Raises:
            RegistryError: If path cannot be read
        """
        root = Path(path)
        try:
            children = sorted(root.iterdir())
        except OSError as e:
            raise RegistryError(f"failed to read directory {root}: {e}") from e

        registry = cls()
        for child in children:
            if not child.is_dir():
                continue
            for filename, interpreter in KNOWN_HOSTS:
                script = child / filename
                if script.is_file():
                    registry._sidecars[child.name] = SidecarConfig(
                        name=child.name,
                        command=interpreter,
                        args=[str(script)],
                    )
                    logger.debug("discovered sidecar %s: %s %s", child.name, interpreter, script)
                    break
        return registry
