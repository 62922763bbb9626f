"""Graph-indexed feed and thread-reconstruction engine"""

__version__ = "0.1.0"
