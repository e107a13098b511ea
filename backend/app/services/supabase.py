"""
Supabase Service

Handles connection to Supabase for the API process:
- Settings loaded from environment / .env
- Lazily created Supabase client shared by the store and sensor feed

When no Supabase credentials are configured the API falls back to an
in-memory store (see services/runtime.py), which is how local
development and the test-suite run.
"""

from functools import lru_cache
from typing import Optional

from supabase import create_client, Client
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Create a .env file with:
    - SUPABASE_URL=https://xxx.supabase.co
    - SUPABASE_SERVICE_KEY=your-service-role-key
    - ENVIRONMENT=production
    - ALLOWED_ORIGINS=https://app.example.com,https://www.example.com
    - CONTROLLER_CONFIG_PATH=/etc/canopy/config.yaml
    - RUN_CONTROL_LOOP=true   (run the facility loops inside the API process)
    """
    supabase_url: str = ""
    supabase_service_key: str = ""
    environment: str = "development"
    # Comma-separated list
    allowed_origins: str = ""
    controller_config_path: str = ""
    run_control_loop: bool = False

    @property
    def supabase_key(self) -> str:
        """Get the Supabase key (from SUPABASE_SERVICE_KEY env var)."""
        return self.supabase_service_key

    @property
    def supabase_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    @property
    def origins(self) -> list[str]:
        """CORS origins, with the local dashboard added outside production."""
        origins = [o.strip() for o in self.allowed_origins.split(",") if o.strip()]
        if self.environment == "development" or not origins:
            origins.extend([
                "http://localhost:3000",      # Next.js dev server
                "http://127.0.0.1:3000",
            ])
        return origins

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings."""
    return Settings()


class SupabaseService:
    """
    Supabase client wrapper.

    Provides the shared client for SupabaseStore and SupabaseSensorFeed.
    """

    def __init__(self):
        self._client: Optional[Client] = None

    @property
    def client(self) -> Client:
        """Get or create Supabase client."""
        if self._client is None:
            settings = get_settings()
            if not settings.supabase_configured:
                raise ValueError(
                    "Supabase credentials not configured. "
                    "Set SUPABASE_URL and SUPABASE_SERVICE_KEY in .env file."
                )
            self._client = create_client(
                settings.supabase_url,
                settings.supabase_key
            )
        return self._client

    def is_connected(self) -> bool:
        """Check if Supabase connection is working."""
        try:
            # Simple query to test connection
            self.client.table("facilities").select("id").limit(1).execute()
            return True
        except Exception:
            return False


# Singleton instance
supabase_service = SupabaseService()
