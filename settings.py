import os

from mipcache.thumb_config import str2bool

# Sources are served from here; request paths are relative to it.
BASE_DIR = os.getenv('BASE_DIR', '/srv/files')

# Thumbnail cache storage.
CACHE_DIR = os.getenv('CACHE_DIR', os.path.join(BASE_DIR, '.thumbcache'))
ATTR_DIR = os.getenv('ATTR_DIR', os.path.join(BASE_DIR, '.thumbattrs'))

# 'local' or 'mysql'
RECORD_BACKEND = os.getenv('RECORD_BACKEND', 'local')
# 'local' or 's3' (S3_* variables, see mipcache.s3_config)
BLOB_BACKEND = os.getenv('BLOB_BACKEND', 'local')

SQL_USER = os.getenv('SQL_USER', 'thumbs')
SQL_PASSWORD = os.getenv('SQL_PASSWORD', '')
SQL_HOST = os.getenv('SQL_HOST', 'localhost')
SQL_PORT = int(os.getenv('SQL_PORT', '3306'))
SQL_DATABASE = os.getenv('SQL_DATABASE', 'thumbs')
SQL_POOL_SIZE = int(os.getenv('SQL_POOL_SIZE', '8'))

# Workers writing generated renditions and records.
PERSIST_WORKERS = int(os.getenv('PERSIST_WORKERS', '2'))

# Workers running paced ladder backfill passes.
BACKFILL_WORKERS = int(os.getenv('BACKFILL_WORKERS', '2'))

ALLOW_STATIC_FILE_ACCESS = str2bool(os.getenv('ALLOW_STATIC_FILE_ACCESS'), True)

PORT = int(os.getenv('PORT', '8080'))
SERVER = os.getenv('SERVER', 'wsgiref')
DEBUG_APP = str2bool(os.getenv('DEBUG_APP'), False)
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
