"""
Relay node package.
Session coordination, tunnel interface management, network policies and
multi-hop routing for a single VPN relay node.
"""
