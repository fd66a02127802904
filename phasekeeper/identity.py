"""PHASEKEEPER identity: version, codename, banner."""

__version__ = "0.4.0"
__codename__ = "PHASEKEEPER"
__tagline__ = "Every phase lands. Nothing rolls back."

BANNER = r"""
 ___ _  _   _   ___ ___ _  _____ ___ ___ ___ ___
| _ \ || | /_\ / __| __| |/ / __| __| _ \ __| _ \
|  _/ __ |/ _ \\__ \ _|| ' <| _|| _||  _/ _||   /
|_| |_||_/_/ \_\___/___|_|\_\___|___|_| |___|_|_\
"""
