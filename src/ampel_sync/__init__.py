"""Ampel: pull request traffic lights across GitHub, GitLab and Bitbucket."""

__version__ = "0.1.0"
