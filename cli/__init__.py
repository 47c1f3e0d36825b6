"""SiteSync command-line client."""
