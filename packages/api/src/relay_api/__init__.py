"""Query API over live streams and stored stream artifacts."""
