"""
Node control API package.
JSON endpoints the gateway uses to manage this relay node.
"""

from node.web.app import app, initialize_web_app, start_web_server

__all__ = ['app', 'initialize_web_app', 'start_web_server']
