import os

class Config:
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL', 'sqlite:///agentjobs_dev.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SECRET_KEY = os.environ.get('FLASK_SECRET_KEY', 'dev-secret-key-change-me')

    # Dev mode: enables /auth/dev-login and relaxes the production startup checks.
    # Defaults to False: must be explicitly enabled via DEV_MODE=true
    DEV_MODE = os.environ.get('DEV_MODE', 'false').lower() in ('true', '1', 'yes')

    # Privileged verifier: user id allowed to attest funding and completion
    VERIFIER_USER_ID = os.environ.get('VERIFICATION_AGENT', '')

    # External profile lookup (Twitter API v2)
    TWITTER_API_BASE = os.environ.get('TWITTER_API_BASE', 'https://api.twitter.com')
    TWITTER_BEARER_TOKEN = os.environ.get('TWITTER_BEARER_TOKEN', '')
    PROFILE_LOOKUP_TIMEOUT = int(os.environ.get('PROFILE_LOOKUP_TIMEOUT', '10'))  # seconds

    # Access tokens (days)
    TOKEN_DEFAULT_TTL_DAYS = int(os.environ.get('TOKEN_DEFAULT_TTL_DAYS', '30'))
    TOKEN_MAX_TTL_DAYS = int(os.environ.get('TOKEN_MAX_TTL_DAYS', '365'))

    # Rate limiting for credential issuance and offer/agent creation
    RATE_LIMIT_PER_MINUTE = int(os.environ.get('RATE_LIMIT_PER_MINUTE', '60'))

    @classmethod
    def validate_production(cls):
        """Startup check: reject unsafe defaults in non-DEV_MODE."""
        if not cls.DEV_MODE and 'sqlite' in cls.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError(
                "FATAL: SQLite is not supported in production mode. "
                "Set DATABASE_URL to a PostgreSQL connection string, "
                "or set DEV_MODE=true for development."
            )
        if not cls.DEV_MODE and cls.SECRET_KEY == 'dev-secret-key-change-me':
            raise RuntimeError(
                "FATAL: SECRET_KEY must be changed from default in production. "
                "Set FLASK_SECRET_KEY environment variable."
            )
        if not cls.DEV_MODE and not cls.VERIFIER_USER_ID:
            raise RuntimeError(
                "FATAL: VERIFICATION_AGENT must be set in production. "
                "Set the VERIFICATION_AGENT environment variable to the "
                "user id authorized to fund and complete jobs."
            )
