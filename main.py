# -*- coding: utf-8 -*-
# ===================================================================
# Karmatic – search gate API
# Entrypoint: gunicorn "main:create_app()" --bind 0.0.0.0:$PORT
# ===================================================================

import os

from karmatic.extensions import db, oauth
from karmatic.factory import create_app
from karmatic.models import AnonymousSearchQuota, SearchHistory, User
from karmatic.quota import QuotaMutator, QuotaStore, evaluate_quota

__all__ = [
    "create_app",
    "db",
    "oauth",
    "User",
    "AnonymousSearchQuota",
    "SearchHistory",
    "QuotaMutator",
    "QuotaStore",
    "evaluate_quota",
]

if __name__ == '__main__':
    app = create_app()
    port = int(os.environ.get('PORT', 5001))
    debug = os.environ.get('FLASK_DEBUG', '').lower() in ('1', 'true', 'yes')
    app.run(host='0.0.0.0', port=port, debug=debug)
