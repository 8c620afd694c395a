from urllib.parse import urlparse
from opus_relay.config.settings import config

def safe_url_for_log(url: str) -> str:
    """URL without query string, which often carries signatures"""
    try:
        parsed = urlparse(url)
        base_url = f"{parsed.scheme}://{parsed.netloc}{parsed.path}"

        if config.logging.level == "DEBUG" and parsed.query:
            return f"{base_url}?..."

        return base_url
    except ValueError:
        return "invalid_url"
