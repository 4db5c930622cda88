"""Configuration loading, defaults and validation for ezdeploy."""
