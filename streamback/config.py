import os

from dotenv import load_dotenv

from streamback.backup.compression import ARCHIVE_FORMATS

# Values from a local .env file; real environment variables take precedence
load_dotenv()


class ConfigError(Exception):
    """Raised at startup when configuration is missing or malformed."""
    pass


def _env_list(name, default=''):
    """Comma separated environment variable as a list of stripped, non-empty items."""
    raw = os.environ.get(name, default)
    return [item.strip() for item in raw.split(',') if item.strip()]


def _env_int(name, default):
    """Integer environment variable. Unparseable values are kept as-is for validate_config()."""
    raw = os.environ.get(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return int(raw)
    except ValueError:
        return raw


def _env_bool(name, default='true'):
    return os.environ.get(name, default).lower() == 'true'


class Config:
    """Base configuration"""

    # Source (SFTP)
    SOURCE_TYPE = os.environ.get('SOURCE_TYPE', 'ssh')
    SFTP_HOST = os.environ.get('SFTP_HOST')
    SFTP_PORT = _env_int('SFTP_PORT', 22)
    SFTP_USER = os.environ.get('SFTP_USER')
    SFTP_PASS = os.environ.get('SFTP_PASS')
    SFTP_KEY_FILE = os.environ.get('SFTP_KEY_FILE')
    SFTP_TIMEOUT = _env_int('SFTP_TIMEOUT', 30)
    LOCAL_SOURCE_ROOT = os.environ.get('LOCAL_SOURCE_ROOT', '/')
    TARGET_FOLDERS = _env_list('TARGET_FOLDERS')

    # Destination
    STORAGE_TYPE = os.environ.get('STORAGE_TYPE', 's3')
    S3_BUCKET = os.environ.get('S3_BUCKET')
    S3_KEY_PREFIX = os.environ.get('S3_KEY_PREFIX', '')
    S3_ENDPOINT_URL = os.environ.get('S3_ENDPOINT_URL')
    AWS_REGION = os.environ.get('AWS_REGION', 'us-east-1')
    AWS_ACCESS_KEY_ID = os.environ.get('AWS_ACCESS_KEY_ID')
    AWS_SECRET_ACCESS_KEY = os.environ.get('AWS_SECRET_ACCESS_KEY')
    LOCAL_BACKUP_DIR = os.environ.get('LOCAL_BACKUP_DIR') or '/data/local_backups'

    # Archive
    BACKUP_PREFIX = os.environ.get('BACKUP_PREFIX', 'backup-')
    ARCHIVE_FORMAT = os.environ.get('ARCHIVE_FORMAT', 'zip')
    COMPRESSION_LEVEL = _env_int('COMPRESSION_LEVEL', 5)
    EXCLUDED_FOLDERS = _env_list('EXCLUDED_FOLDERS', 'logs,cache,crash-reports')
    PIPE_BUFFER_SIZE = _env_int('PIPE_BUFFER_SIZE', 1024 * 1024)

    # Scheduler
    SCHEDULER_ENABLED = _env_bool('SCHEDULER_ENABLED')
    BACKUP_INTERVAL_MINUTES = _env_int('BACKUP_INTERVAL_MINUTES', 60)

    # Logging
    LOG_DIR = os.environ.get('LOG_DIR')
    LOG_BUFFER_SIZE = _env_int('LOG_BUFFER_SIZE', 100)


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    LOCAL_BACKUP_DIR = os.environ.get('LOCAL_BACKUP_DIR') or os.path.join(DATA_DIR, 'local_backups')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


class TestingConfig(Config):
    """Testing configuration: local source and storage, no scheduler"""
    TESTING = True
    DEBUG = False
    SOURCE_TYPE = 'local'
    STORAGE_TYPE = 'local'
    TARGET_FOLDERS = []
    SCHEDULER_ENABLED = False
    LOG_DIR = None


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}


def validate_config(settings):
    """
    Check a loaded configuration before the service starts.

    Args:
        settings: Mapping of configuration keys (e.g. app.config)

    Raises:
        ConfigError: Listing every problem found
    """
    errors = []

    for key in ('SFTP_PORT', 'SFTP_TIMEOUT', 'COMPRESSION_LEVEL', 'PIPE_BUFFER_SIZE',
                'BACKUP_INTERVAL_MINUTES', 'LOG_BUFFER_SIZE'):
        value = settings.get(key)
        if not isinstance(value, int) or isinstance(value, bool):
            errors.append(f"{key} must be an integer, got {value!r}")
        elif value <= 0 and key != 'COMPRESSION_LEVEL':
            errors.append(f"{key} must be positive, got {value}")

    level = settings.get('COMPRESSION_LEVEL')
    if isinstance(level, int) and not 0 <= level <= 9:
        errors.append(f"COMPRESSION_LEVEL must be between 0 and 9, got {level}")

    source_type = settings.get('SOURCE_TYPE')
    if source_type == 'ssh':
        if not settings.get('SFTP_HOST'):
            errors.append("SFTP_HOST is required for ssh sources")
        if not settings.get('SFTP_USER'):
            errors.append("SFTP_USER is required for ssh sources")
        if not settings.get('SFTP_PASS') and not settings.get('SFTP_KEY_FILE'):
            errors.append("Either SFTP_PASS or SFTP_KEY_FILE must be set")
    elif source_type != 'local':
        errors.append(f"SOURCE_TYPE must be 'ssh' or 'local', got {source_type!r}")

    storage_type = settings.get('STORAGE_TYPE')
    if storage_type == 's3':
        if not settings.get('S3_BUCKET'):
            errors.append("S3_BUCKET is required for s3 storage")
    elif storage_type == 'local':
        if not settings.get('LOCAL_BACKUP_DIR'):
            errors.append("LOCAL_BACKUP_DIR is required for local storage")
    else:
        errors.append(f"STORAGE_TYPE must be 's3' or 'local', got {storage_type!r}")

    if settings.get('ARCHIVE_FORMAT') not in ARCHIVE_FORMATS:
        errors.append(
            f"ARCHIVE_FORMAT must be one of {list(ARCHIVE_FORMATS.keys())}, "
            f"got {settings.get('ARCHIVE_FORMAT')!r}"
        )

    folders = settings.get('TARGET_FOLDERS')
    if not isinstance(folders, (list, tuple)):
        errors.append("TARGET_FOLDERS must be a list")
    elif not folders and not settings.get('TESTING'):
        errors.append("TARGET_FOLDERS must name at least one folder")

    if errors:
        raise ConfigError("Invalid configuration: " + "; ".join(errors))
