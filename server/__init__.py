"""
Starlette application factory and HTTP routes.
"""
