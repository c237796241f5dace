"""
qbt-automations - rule engine and reannounce scheduler for qBittorrent fleets
"""

from qbt_automations.__version__ import __version__, __description__

__all__ = ['__version__', '__description__']
