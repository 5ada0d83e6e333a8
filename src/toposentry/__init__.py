"""TopoSentry: infrastructure topology graphs of managed hosts"""

__version__ = "0.1.0"
