"""
Policy Decision Point service.
"""
