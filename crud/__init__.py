# crud/__init__.py
