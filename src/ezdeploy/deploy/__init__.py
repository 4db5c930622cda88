"""Deployment pipeline: phases, strategies and the orchestrator that runs them."""
