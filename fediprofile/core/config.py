from pydantic_settings import BaseSettings
from typing import List, Optional

class Settings(BaseSettings):
    # Basic settings
    PROJECT_NAME: str = "FediProfile"
    API_V1_STR: str = "/api/v1"
    LOG_LEVEL: str = "INFO"
    
    # Storage settings
    # 每個網域一個 {domain}.db，每個使用者一個 {domain}_{slug}.db
    DB_DATA: str = "./App_Data"
    
    # Domain bootstrap
    DOMAINS: List[str] = ["localhost"]
    ADMIN_MASTODON_USER: Optional[str] = None
    ADMIN_MASTODON_DOMAIN: Optional[str] = None
    
    # Tenant API (unset = disabled)
    ADMIN_API_TOKEN: Optional[str] = None
    
    # ActivityPub settings
    REMOTE_CONNECT_TIMEOUT: float = 10.0
    REMOTE_READ_TIMEOUT: float = 20.0
    USER_AGENT: str = "FediProfile/1.0"
    VERIFY_INBOX_SIGNATURES: bool = False
    SIGNATURE_MAX_SKEW: int = 12 * 60 * 60
    
    # Actor defaults
    DEFAULT_ACTOR_NAME: str = "profile"
    DEFAULT_ACTOR_BIO: str = "A FediProfile instance"
    DEFAULT_AVATAR_PATH: str = "/assets/avatar.png"
    
    # OAuth app registration
    OAUTH_CLIENT_NAME: str = "FediProfile"
    OAUTH_WEBSITE: Optional[str] = None
    OAUTH_SCOPES: List[str] = ["profile", "read", "read:accounts", "read:statuses"]
    OAUTH_REDIRECT_PATH: str = "/signin-mastodon"
    
    # CORS settings
    ALLOWED_HOSTS: List[str] = ["*"]
    
    class Config:
        env_file = ".env"
        case_sensitive = True

settings = Settings()
