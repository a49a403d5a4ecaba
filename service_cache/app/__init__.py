"""
Marketplace cache service.
"""
