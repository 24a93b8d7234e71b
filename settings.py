from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    DATABASE_URL: str = "mongodb://localhost:27017"
    DATABASE_NAME: str = "pc_shop"

    JWT_SECRET: str = "devsecret"
    JWT_EXPIRES_MINUTES: int = 60 * 24 * 7
    BCRYPT_ROUNDS: int = 10

    SMTP_HOST: str = "smtp.gmail.com"
    SMTP_PORT: int = 465
    EMAIL_USER: str = ""
    EMAIL_PASSWORD: str = ""
    EMAIL_FROM: str = ""

    CLOUDINARY_CLOUD_NAME: str = ""
    CLOUDINARY_API_KEY: str = ""
    CLOUDINARY_API_SECRET: str = ""
    CLOUDINARY_FOLDER: str = "products"

    BANK_CODE: str = "MB"
    BANK_ACCOUNT_NO: str = ""
    BANK_ACCOUNT_NAME: str = ""

    CORS_ORIGINS: List[str] = ["*"]
    LOG_LEVEL: str = "INFO"
    PORT: int = 8000


settings = Settings()
