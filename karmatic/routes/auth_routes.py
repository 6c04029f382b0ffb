# -*- coding: utf-8 -*-
"""
Authentication blueprint - OpenID Connect sign-in against the configured
identity provider, Flask-Login sessions afterwards.
"""

from flask import Blueprint, current_app, redirect, session, url_for
from flask_login import login_user, logout_user, login_required
from authlib.integrations.base_client.errors import MismatchingStateError, OAuthError
from sqlalchemy.exc import SQLAlchemyError

from karmatic.exceptions import PersistenceError
from karmatic.extensions import db, oauth
from karmatic.models import User
from karmatic.services.history_service import transfer_anonymous_history
from karmatic.session import read_session_id
from karmatic.utils.http_helpers import get_request_id

bp = Blueprint('auth', __name__)


def _frontend_url() -> str:
    return current_app.config.get("FRONTEND_URL") or "/"


def _upsert_user(userinfo: dict) -> User:
    user = User.query.filter_by(auth_subject=userinfo["sub"]).first()
    if not user:
        user = User(auth_subject=userinfo["sub"])
        db.session.add(user)
    user.email = userinfo.get("email") or user.email
    user.first_name = userinfo.get("given_name") or user.first_name
    user.last_name = userinfo.get("family_name") or user.last_name
    db.session.commit()
    return user


@bp.route('/login')
def login():
    for key in [k for k in session.keys() if k.startswith("_state_identity")]:
        session.pop(key, None)
    redirect_uri = url_for('auth.callback', _external=True)
    return oauth.identity.authorize_redirect(redirect_uri)


@bp.route('/auth/callback')
def callback():
    try:
        token = oauth.identity.authorize_access_token()
        userinfo = token.get("userinfo") or oauth.identity.userinfo(token=token)
        user = _upsert_user(userinfo)
        login_user(user)
        current_app.logger.info("[AUTH] signed in user_id=%s request_id=%s", user.id, get_request_id())
    except MismatchingStateError:
        current_app.logger.warning("[AUTH] mismatching_state request_id=%s", get_request_id())
        return redirect(url_for('auth.login'))
    except (OAuthError, KeyError):
        current_app.logger.exception("[AUTH] login failed request_id=%s", get_request_id())
        return redirect(_frontend_url())
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("[AUTH] user upsert failed request_id=%s", get_request_id())
        return redirect(_frontend_url())

    try:
        transfer_anonymous_history(read_session_id(), user.id)
    except PersistenceError:
        # Sign-in still succeeds; the visitor can retry via /api/search/history/transfer.
        current_app.logger.warning("[AUTH] history transfer skipped request_id=%s", get_request_id())
    return redirect(_frontend_url())


@bp.route('/logout')
@login_required
def logout():
    logout_user()
    return redirect(_frontend_url())
