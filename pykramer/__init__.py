"""pykramer Python Package

Python library for controlling Kramer video/audio matrix switchers over
Protocol 2000 and Protocol 3000.
"""

from pykramer.config import MatrixConfig
from pykramer.const import Instruction, Medium, ProtocolVariant
from pykramer.exceptions import ConfigurationError
from pykramer.matrix import KramerMatrix

__all__ = [
    "ConfigurationError",
    "Instruction",
    "KramerMatrix",
    "MatrixConfig",
    "Medium",
    "ProtocolVariant",
]
