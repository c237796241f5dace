"""Version information for qbt-automations"""

__version__ = '1.0.0'
__description__ = 'Tracker rule engine and stalled-torrent reannounce scheduler for qBittorrent'
