# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Platform naming helpers shared by the registry client and the local backend.
"""

import platform
from typing import Optional, Tuple

# Map Python / daemon machine names to OCI architecture names
ARCH_MAP = {
    "x86_64": "amd64",
    "aarch64": "arm64",
    "armv7l": "arm",
    "i386": "386",
    "i686": "386",
}


def normalize_arch(arch: str) -> str:
    arch = arch.lower()
    return ARCH_MAP.get(arch, arch)


def host_platform() -> Tuple[str, str]:
    """
    Return (os, architecture) to select images for on this machine.

    The OS is always linux: Docker Desktop on macOS and Windows runs linux
    containers in a VM, and no image index lists darwin entries.
    """
    return "linux", normalize_arch(platform.machine())


def parse_platform(value: Optional[str]) -> Tuple[str, str, Optional[str]]:
    """
    Parse an `os/arch[/variant]` string.

    Falls back to the host platform when `value` is empty.
    """
    if not value:
        os_name, arch = host_platform()
        return os_name, arch, None
    parts = value.split("/")
    if len(parts) < 2 or not all(parts):
        raise ValueError(f"Invalid platform: {value!r}")
    variant = parts[2] if len(parts) > 2 else None
    return parts[0].lower(), normalize_arch(parts[1]), variant
