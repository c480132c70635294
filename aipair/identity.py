"""
AI Pair identity constants.
"""

__version__ = "0.4.0"
__codename__ = "AI PAIR"
__tagline__ = "Generate. Build. Test. Repeat."

BANNER = r"""
    _    ___   ____       _
   / \  |_ _| |  _ \ __ _(_)_ __
  / _ \  | |  | |_) / _` | | '__|
 / ___ \ | |  |  __/ (_| | | |
/_/   \_\___| |_|   \__,_|_|_|
"""
