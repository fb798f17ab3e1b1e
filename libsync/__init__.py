"""LibSync - Circulation Engine Package

This package contains the circulation core and its outer surfaces:
- Circulation coordinator (circulation.py)
- Book ledger, reservation queue and loan ledger (books.py, reservations.py, loans.py)
- Student directory (students.py)
- Data models and error taxonomy (models.py, errors.py)
- Database layer (database.py)
- API endpoints (api.py) and CLI interface (main.py)
"""
