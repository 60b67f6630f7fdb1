from lib.config import get_settings
from lib.database import Database
from lib.error_handler import ConfigurationError


def check_services():
    """Report missing settings and whether Supabase answers."""
    settings = get_settings()
    missing = settings.missing_required()
    if missing:
        print(f"Missing environment variables: {', '.join(missing)}")
    else:
        print("All required environment variables are set.")

    try:
        database = Database(settings)
    except ConfigurationError as e:
        print(f"Supabase not configured: {e.message}")
        return False

    status = database.ping()
    print(f"Supabase: {status}")
    return not missing and status == 'connected'


if __name__ == "__main__":
    if not check_services():
        raise SystemExit(1)
