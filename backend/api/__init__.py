# api/__init__.py
# HTTP surface; import ``api.server`` for the app factory.
