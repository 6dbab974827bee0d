import os
import datetime
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def get_env_variable(name: str) -> str:
    """Get an environment variable or raise an exception."""
    try:
        return os.environ[name]
    except KeyError:
        message = f"Expected environment variable '{name}' not set."
        raise Exception(message)


def get_bool_env(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None or value == '':
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


# Collections
POSTS_COLLECTION = 'posts'
COMMENTS_COLLECTION = 'comments'
RATINGS_COLLECTION = 'ratings'

# Post form limits
MAX_TITLE_LENGTH = 200
MAX_EXCERPT_LENGTH = 500
AUTO_EXCERPT_LENGTH = 200
MAX_TAGS = 10

# Listing limits
DEFAULT_PAGE_SIZE = 12
MAX_PAGE_SIZE = 50
SEARCH_BATCH_SIZE = 100
TAG_RESULTS_LIMIT = 50
SORT_OPTIONS = ('newest', 'oldest', 'rating', 'views')

# Media
MAX_FILE_SIZE = 500 * 1024 * 1024  # 500 MiB
ALLOWED_IMAGE_TYPES = {'image/jpeg', 'image/jpg', 'image/png', 'image/webp', 'image/gif'}
ALLOWED_VIDEO_TYPES = {'video/mp4', 'video/mkv', 'video/webm', 'video/mov', 'video/avi',
                       'video/quicktime', 'video/x-msvideo'}
ALLOWED_MEDIA_TYPES = ALLOWED_IMAGE_TYPES | ALLOWED_VIDEO_TYPES
# Stored names always end in one of these so the blob store can tell images from videos
IMAGE_EXTENSIONS = {'.jpg', '.jpeg', '.png', '.webp', '.gif'}
VIDEO_EXTENSIONS = {'.mp4', '.mkv', '.webm', '.mov', '.avi'}
MEDIA_EXTENSIONS = {
    'image/jpeg': '.jpg', 'image/jpg': '.jpg', 'image/png': '.png', 'image/webp': '.webp', 'image/gif': '.gif',
    'video/mp4': '.mp4', 'video/mkv': '.mkv', 'video/webm': '.webm', 'video/mov': '.mov', 'video/avi': '.avi',
    'video/quicktime': '.mov', 'video/x-msvideo': '.avi',
}
TEMP_MAX_AGE = datetime.timedelta(hours=24)
UPLOAD_WORKERS = int(os.environ.get('UPLOAD_WORKERS', 0)) or None

# Google OAuth endpoints
GOOGLE_AUTH_URL = 'https://accounts.google.com/o/oauth2/auth'
GOOGLE_TOKEN_URL = 'https://oauth2.googleapis.com/token'
GOOGLE_USERINFO_URL = 'https://www.googleapis.com/oauth2/v2/userinfo'
GOOGLE_SCOPES = ['openid', 'email', 'profile']
