"""
Vigil HTTP API.
"""
