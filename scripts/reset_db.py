"""Reset database: clear all rows, keep table structure.

Works with both SQLite (local dev) and PostgreSQL.
Does NOT import server.py to avoid triggering server initialization side effects.

Usage: python scripts/reset_db.py [--yes]
"""
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import Config
from models import db
from flask import Flask

app = Flask(__name__)
app.config['SQLALCHEMY_DATABASE_URI'] = Config.SQLALCHEMY_DATABASE_URI
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
db.init_app(app)

if __name__ == '__main__':
    if '--yes' not in sys.argv:
        answer = input(f"Delete every row in {Config.SQLALCHEMY_DATABASE_URI}? [y/N] ")
        if answer.strip().lower() != 'y':
            sys.exit(1)

    with app.app_context():
        # Children first: access_tokens, jobs, offers, agents, users
        for table in reversed(db.metadata.sorted_tables):
            deleted = db.session.execute(table.delete()).rowcount
            print(f"  {table.name}: {deleted} rows")
        db.session.commit()
        print(f"All data cleared from: {Config.SQLALCHEMY_DATABASE_URI}")
