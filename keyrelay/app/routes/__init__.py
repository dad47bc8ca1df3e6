"""KeyRelay Routes Package.

This package contains all route handlers organized by domain:

Proxy routes:
- proxy: OpenAI-compatible chat completions and model listing
- health: Health check and monitoring endpoints

Admin routes:
- keys: Upstream credential management and health probes
- proxy_keys: Proxy access key management
- models: Model pool and upstream catalog
- settings: Runtime configuration and statistics
"""
from keyrelay.app.routes import health, keys, models, proxy, proxy_keys, settings

__all__ = ["health", "keys", "models", "proxy", "proxy_keys", "settings"]
