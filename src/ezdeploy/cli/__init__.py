"""Command line interface for ezdeploy."""
