"""
Request gateway package for the Pratibha Marketing web core.

This is the page-session side of the client. It wraps every API call made
by the UI, enforcing:
- Anti-forgery tokens on state-changing requests, refreshed single-flight
- Uniform, classified results instead of raised transport errors
- Bounded retries for transient network failures
- Session clean-up and login redirect on expired sessions

Structure:
- app.adapters: API client, CSRF token cache, worker control channel.
- app.session: Auth state, connectivity signal and navigation.
"""
