"""libdesk - library desk backend

This package contains the application modules:
- REST API for the admin console and the reader catalog (api.py)
- Catalog, book instances and shelf layout (library.py, shelves.py)
- Users, roles and authentication (accounts.py)
- Reservations, wait lists and fines (circulation.py)
- Notifications and the live notification hub (notifications.py)
- AI assistant tool selection (assistant/)
- Database layer (database.py)
"""

__version__ = "1.4.0"
