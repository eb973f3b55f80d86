"""Digital Factory API demo client.

This package contains the reusable API client, the OAuth2 PKCE sign-in flow
and the demo / cluster monitor entry points.

Recommended invocation (ensures imports work reliably):
- python -m digital_factory.demo
- python -m digital_factory.monitor_clusters
- python -m digital_factory.authorize
"""
