"""
chatwarden: multi-session chat orchestration with group administration commands.
"""

__version__ = "0.1.0"
