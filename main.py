import datetime
import logging
import os
import sys
from concurrent.futures import ThreadPoolExecutor
from logging.handlers import RotatingFileHandler

import bleach
import cloudinary
import markdown
import redis
from flask import Flask, request, jsonify, url_for, redirect, session
from flask_login import LoginManager, UserMixin, login_user, logout_user, login_required, current_user
from flask_rq2 import RQ
from pymongo import MongoClient
from pythonjsonlogger import jsonlogger
from ratelimit import limits, RateLimitException
from werkzeug.middleware.proxy_fix import ProxyFix

import config
from config import get_env_variable, get_bool_env
from auth import Identity, IdentityProvider
from blobs import CloudinaryBlobStore
from comments import CommentService
from errors import BlogError, BackendError, ValidationError, UnauthorizedError
from media import MediaFile, MediaManager, temp_media_path
from posts import PostService
from ratings import RatingAggregator
from store import MongoDocumentStore


app = Flask(__name__)

# Use ProxyFix to handle headers from reverse proxies so url_for builds https links
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_prefix=1)

if not app.debug:
    log_file_path = os.environ.get('LOG_FILE', 'blog.log')
    file_handler = RotatingFileHandler(log_file_path, maxBytes=1024 * 1024 * 10, backupCount=5)
    file_handler.setLevel(logging.INFO)
    formatter = jsonlogger.JsonFormatter(
        '%(asctime)s %(name)s %(levelname)s %(message)s %(pathname)s %(lineno)d'
    )
    file_handler.setFormatter(formatter)

    # Attach to the root logger so the service modules' loggers end up in the same file
    root_logger = logging.getLogger()
    root_logger.addHandler(file_handler)
    root_logger.setLevel(logging.INFO)
    app.logger.info('Blog application startup')

login_manager = LoginManager(app)
rq = RQ(app)

app.config['SESSION_COOKIE_HTTPONLY'] = True
app.config['SESSION_COOKIE_SECURE'] = get_bool_env('SESSION_COOKIE_SECURE', True)
app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'
app.config['PERMANENT_SESSION_LIFETIME'] = datetime.timedelta(days=30)
app.config['PREFERRED_URL_SCHEME'] = 'https'
app.config["SECRET_KEY"] = get_env_variable('SECRET')
app.config['RQ_REDIS_URL'] = os.environ.get('REDIS_URL', 'redis://localhost:6379/0')

# Rate limit window (seconds) for the sign-in entry point
TIME = int(os.environ.get('TIME', 60))

AUTHORIZED_EMAIL = get_env_variable('AUTHORIZED_EMAIL')
FRONTEND_URL = os.environ.get('FRONTEND_URL')

cloudinary.config(
    cloud_name=get_env_variable('CLOUDINARY_CLOUD_NAME'),
    api_key=get_env_variable('CLOUDINARY_API_KEY'),
    api_secret=get_env_variable('CLOUDINARY_API_SECRET'),
    secure=True,
)

client = MongoClient(get_env_variable('MONGODB_CONNECTION'), tz_aware=True)
db = client[os.environ.get('MONGODB_DB', 'blog_db')]

store = MongoDocumentStore(db, client=client, transactions=get_bool_env('MONGODB_TRANSACTIONS', False))
media_manager = MediaManager(CloudinaryBlobStore(), max_workers=config.UPLOAD_WORKERS)
comment_service = CommentService(store)
post_service = PostService(store, media=media_manager, comments=comment_service)
rating_aggregator = RatingAggregator(store)
identity_provider = IdentityProvider(
    get_env_variable('GOOGLE_CLIENT_ID'),
    get_env_variable('GOOGLE_CLIENT_SECRET'),
    AUTHORIZED_EMAIL,
)

ALLOWED_HTML_TAGS = {
    'a', 'abbr', 'b', 'blockquote', 'br', 'code', 'em', 'h1', 'h2', 'h3', 'h4', 'h5', 'h6',
    'hr', 'i', 'img', 'li', 'ol', 'p', 'pre', 'strong', 'ul',
}
ALLOWED_HTML_ATTRIBUTES = {'a': ['href', 'title'], 'img': ['src', 'alt', 'title'], 'abbr': ['title']}


def _log_identity_change(identity):
    if identity:
        app.logger.info(f"Active identity: {identity.email}")
    else:
        app.logger.info("No active identity")


unsubscribe_identity_log = identity_provider.subscribe(_log_identity_change)


class User(UserMixin):
    def __init__(self, identity):
        self.id = identity.uid
        self.identity = identity


@login_manager.user_loader
def load_user(user_id):
    data = session.get('identity')
    if not data or data.get('uid') != user_id:
        return None
    identity = Identity.from_dict(data)
    # Guard against a changed AUTHORIZED_EMAIL invalidating old sessions
    if not identity_provider.is_authorized(identity):
        return None
    return User(identity)


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({'error': 'Unauthorized', 'message': 'Authentication required'}), 401


def render_content(text):
    """Render post Markdown to HTML that is safe to embed."""
    html = markdown.markdown(text or '', extensions=['fenced_code'])
    cleaned = bleach.clean(html, tags=ALLOWED_HTML_TAGS, attributes=ALLOWED_HTML_ATTRIBUTES, strip=True)
    return bleach.linkify(cleaned)


def _iso(value):
    return value.isoformat() if isinstance(value, datetime.datetime) else value


def _serialize_media(item):
    item = dict(item)
    item['created_at'] = _iso(item.get('created_at'))
    return item


def _serialize_post(post, with_html=False):
    data = dict(post)
    data['created_at'] = _iso(post.get('created_at'))
    data['updated_at'] = _iso(post.get('updated_at'))
    data['media'] = [_serialize_media(m) for m in post.get('media') or []]
    try:
        data['comment_count'] = comment_service.count_comments(post['id'])
    except BackendError as e:
        app.logger.warning(f"Could not fetch comment count for post {post['id']}: {e}")
        data['comment_count'] = None
    if with_html:
        data['content_html'] = render_content(post.get('content'))
    return data


def _serialize_comment(comment):
    data = dict(comment)
    data['created_at'] = _iso(comment.get('created_at'))
    data['updated_at'] = _iso(comment.get('updated_at'))
    return data


def _serialize_rating(rating):
    data = dict(rating)
    data['created_at'] = _iso(rating.get('created_at'))
    return data


def _json_body():
    body = request.get_json(silent=True)
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise ValidationError('Expected a JSON object', code='invalid_body')
    return body


@rq.job
def cleanup_temp_uploads_job(user_id):
    """Background sweep of a user's stale temp uploads."""
    deleted = media_manager.cleanup_temp(user_id)
    app.logger.info(f"Temp upload sweep for {user_id} removed {deleted} files")
    return deleted


def enqueue_temp_cleanup(user_id):
    try:
        cleanup_temp_uploads_job.queue(user_id)
        app.logger.info(f"Enqueued temp upload sweep for {user_id}")
    except redis.exceptions.ConnectionError as e:
        app.logger.warning(f"Redis connection failed. Falling back to thread for temp upload sweep. Error: {e}")
        ThreadPoolExecutor().submit(cleanup_temp_uploads_job, user_id)


# ----------------- Authentication -----------------

@app.route('/google_login')
@limits(calls=15, period=TIME)
def google_login():
    authorization_url, state = identity_provider.authorization_url(url_for('google_callback', _external=True))
    session['oauth_state'] = state
    return redirect(authorization_url)


@app.route('/google_callback')
def google_callback():
    if 'oauth_state' not in session:
        raise UnauthorizedError("Authentication session expired or was already used. Please try logging in again.",
                                code='oauth_state_missing')

    # Pop the state immediately so a replayed callback cannot reuse it
    oauth_state = session.pop('oauth_state', None)
    identity = identity_provider.sign_in_interactive(
        request.url, oauth_state, url_for('google_callback', _external=True)
    )
    session['identity'] = identity.to_dict()
    login_user(User(identity), remember=True)
    enqueue_temp_cleanup(identity.uid)
    return redirect(FRONTEND_URL or url_for('api_me'))


@app.route('/logout')
def logout():
    logout_user()
    session.pop('identity', None)
    identity_provider.sign_out()
    return jsonify({'status': 'signed_out'})


@app.route('/api/me')
def api_me():
    if not current_user.is_authenticated:
        return jsonify({'identity': None})
    return jsonify({'identity': current_user.identity.to_dict()})


# ----------------- Posts -----------------

@app.route('/api/posts', methods=['GET'])
def api_list_posts():
    sort_by = request.args.get('sort', 'newest')
    limit = min(request.args.get('limit', config.DEFAULT_PAGE_SIZE, type=int), config.MAX_PAGE_SIZE)
    cursor = request.args.get('cursor') or None
    page = post_service.list_posts(sort_by, limit, cursor)
    return jsonify({
        'posts': [_serialize_post(p) for p in page['posts']],
        'has_more': page['has_more'],
        'next_cursor': page['next_cursor'],
    })


@app.route('/api/posts/search')
def api_search_posts():
    query = request.args.get('q', '')
    posts = post_service.search_posts(query)
    return jsonify({'query': query, 'posts': [_serialize_post(p) for p in posts]})


@app.route('/api/posts/tag/<tag>')
def api_posts_by_tag(tag):
    posts = post_service.posts_by_tag(tag)
    return jsonify({'tag': tag, 'posts': [_serialize_post(p) for p in posts]})


@app.route('/api/posts', methods=['POST'])
@login_required
def api_create_post():
    data = _json_body()
    identity = current_user.identity
    temp_media = data.get('media') or []
    media_manager.validate_items(temp_media)
    post_id = post_service.create_post(data, identity)
    if temp_media:
        moved = media_manager.move_to_post(temp_media, identity.uid, post_id)
        post_service.attach_media(post_id, moved)
    return jsonify(_serialize_post(post_service.get_post(post_id), with_html=True)), 201


@app.route('/api/posts/<post_id>', methods=['GET'])
def api_get_post(post_id):
    return jsonify(_serialize_post(post_service.get_post(post_id), with_html=True))


@app.route('/api/posts/<post_id>', methods=['PUT', 'PATCH'])
@login_required
def api_update_post(post_id):
    data = _json_body()
    temp_media = data.pop('media', None) or []
    media_manager.validate_items(temp_media)
    post_service.update_post(post_id, data)
    if temp_media:
        moved = media_manager.move_to_post(temp_media, current_user.id, post_id)
        post_service.attach_media(post_id, moved)
    return jsonify(_serialize_post(post_service.get_post(post_id), with_html=True))


@app.route('/api/posts/<post_id>', methods=['DELETE'])
@login_required
def api_delete_post(post_id):
    post_service.delete_post(post_id)
    return jsonify({'status': 'deleted'})


@app.route('/api/posts/<post_id>/view', methods=['POST'])
def api_record_post_view(post_id):
    post_service.increment_view_count(post_id)
    post = post_service.get_post(post_id)
    return jsonify({'success': True, 'view_count': post.get('view_count', 0)})


# ----------------- Comments -----------------

@app.route('/api/posts/<post_id>/comments', methods=['GET'])
def api_list_comments(post_id):
    comments = comment_service.get_comments(post_id)
    return jsonify({'comments': [_serialize_comment(c) for c in comments], 'total': len(comments)})


@app.route('/api/posts/<post_id>/comments', methods=['POST'])
@login_required
def api_add_comment(post_id):
    data = _json_body()
    content = data.get('content') or request.form.get('content')
    comment_id = comment_service.add_comment(post_id, content, current_user.identity)
    return jsonify(_serialize_comment(comment_service.get_comment(comment_id))), 201


@app.route('/api/comments/<comment_id>', methods=['PUT', 'PATCH'])
@login_required
def api_edit_comment(comment_id):
    data = _json_body()
    content = data.get('content') or request.form.get('content')
    return jsonify(_serialize_comment(comment_service.update_comment(comment_id, content)))


@app.route('/api/comments/<comment_id>', methods=['DELETE'])
@login_required
def api_delete_comment(comment_id):
    comment_service.delete_comment(comment_id)
    return jsonify({'status': 'deleted'})


# ----------------- Ratings -----------------

@app.route('/api/posts/<post_id>/ratings', methods=['GET'])
def api_post_ratings(post_id):
    post = post_service.get_post(post_id)
    ratings = rating_aggregator.get_post_ratings(post_id)
    user_rating = None
    if current_user.is_authenticated:
        user_rating = rating_aggregator.get_user_rating(post_id, current_user.id)
    return jsonify({
        'avg_rating': post.get('avg_rating', 0),
        'total_ratings': post.get('total_ratings', 0),
        'user_rating': user_rating,
        'ratings': [_serialize_rating(r) for r in ratings],
    })


@app.route('/api/posts/<post_id>/rating', methods=['POST'])
@login_required
def api_submit_rating(post_id):
    stars = _json_body().get('rating')
    avg_rating, total_ratings = rating_aggregator.submit_rating(post_id, current_user.id, stars)
    return jsonify({'avg_rating': avg_rating, 'total_ratings': total_ratings, 'user_rating': stars})


@app.route('/api/posts/<post_id>/rating', methods=['DELETE'])
@login_required
def api_remove_rating(post_id):
    avg_rating, total_ratings = rating_aggregator.remove_rating(post_id, current_user.id)
    return jsonify({'avg_rating': avg_rating, 'total_ratings': total_ratings, 'user_rating': None})


# ----------------- Media -----------------

@app.route('/api/media', methods=['POST'])
@login_required
def api_upload_media():
    uploads = request.files.getlist('files')
    if not uploads:
        raise ValidationError('No files provided', code='no_files')
    post_id = request.form.get('post_id') or None
    if post_id:
        post_service.get_post(post_id)

    def _progress(completed, total):
        app.logger.debug(f"Uploaded {completed}/{total} files for {current_user.id}")

    files = [MediaFile.from_storage(f) for f in uploads]
    items = media_manager.upload_many(files, current_user.id, post_id, on_progress=_progress)
    if post_id:
        post_service.attach_media(post_id, items)
    return jsonify({'media': [_serialize_media(i) for i in items], 'post_id': post_id}), 201


@app.route('/api/media/temp/<media_id>', methods=['DELETE'])
@login_required
def api_delete_temp_media(media_id):
    media_manager.delete_media(temp_media_path(current_user.id, media_id))
    return jsonify({'status': 'deleted'})


@app.route('/api/posts/<post_id>/media/<media_id>', methods=['DELETE'])
@login_required
def api_delete_post_media(post_id, media_id):
    remaining = post_service.remove_media(post_id, media_id)
    return jsonify({'media': [_serialize_media(i) for i in remaining]})


@app.route('/api/media/cleanup', methods=['POST'])
@login_required
def api_cleanup_temp_media():
    enqueue_temp_cleanup(current_user.id)
    return jsonify({'status': 'queued'}), 202


@app.route('/health')
def health_check():
    try:
        store.ping()
        db_status = 'connected'
    except BackendError:
        db_status = 'error'
    return jsonify({
        'status': 'healthy' if db_status == 'connected' else 'degraded',
        'database': db_status,
        'timestamp': datetime.datetime.now(datetime.timezone.utc).isoformat(),
    })


# Handles any possible errors

@app.errorhandler(BlogError)
def handle_blog_error(e):
    if isinstance(e, BackendError):
        app.logger.error(f"Backend error on {request.path}: {e.message}")
    else:
        app.logger.warning(f"{e.__class__.__name__} on {request.path}: {e.message}")
    return jsonify({'error': e.__class__.__name__, 'message': e.message, 'code': e.code}), e.status_code


@app.errorhandler(404)
def page_not_found(e):
    return jsonify({'error': 'NotFound', 'message': f"The path '{request.path}' was not found"}), 404


@app.errorhandler(RateLimitException)
def handle_ratelimit_exception(e):
    period_remaining = int(e.period_remaining) + 1
    app.logger.warning(f"Rate limit exceeded for IP {request.remote_addr}. Blocked for {period_remaining} seconds.")
    return jsonify({'error': 'RateLimited', 'retry_after': period_remaining}), 429


@app.errorhandler(500)
def internal_server_error(e):
    try:
        app.logger.error(f"Internal Server Error on {request.path}: {e}", exc_info=True)
    except Exception as log_e:
        print(f"CRITICAL: Failed to log 500 error: {log_e}", file=sys.stderr)
    return jsonify({'error': 'InternalServerError', 'message': 'Internal server error'}), 500


if __name__ == '__main__':
    store.ensure_indexes()
    app.run(host='0.0.0.0', port=int(os.environ.get('PORT', 5000)))
