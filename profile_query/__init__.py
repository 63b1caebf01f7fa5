from profile_query.version import __version__, VERSION_FINGERPRINT
