# backend/wsgi.py
from stockledger import create_app

app = create_app()
