"""
Shared building blocks of the relay node: key material, wire codecs and utilities.
"""
