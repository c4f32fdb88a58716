"""HTTP routers mounted by :func:`gateway.main.create_app`."""
