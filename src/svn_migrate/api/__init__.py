"""GitLab API client."""
