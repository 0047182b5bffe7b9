"""
Game Share application package.

Layered architecture:

  app/repositories/  - pure I/O: writing uploaded assets to and removing them from disk.
  app/services/      - business logic: validation, catalog rules, ratings, downloads, accounts.
  app/errors.py      - the error taxonomy every layer raises.

``gameshare_web.create_app`` is the integration point: it builds the
repository and service instances once and route handlers call them with a
per-request SQLAlchemy session, giving a clean separation between the HTTP
layer and the domain.
"""
