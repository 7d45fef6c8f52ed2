"""
Needle - Terminal attention triage for your GitHub pull requests.

A TUI tool that:
1. Pulls your open PRs and the reviews requested from you
2. Scores each PR by urgency (CI failures, review requests, stale approvals)
3. Remembers the last-seen state so only *new* failures get your attention
4. Renders everything in a refreshing dashboard grouped by category

Usage:
    needle                  # Dashboard for the authenticated GitHub user
    needle --demo           # Dashboard with fake data (no token needed)
    needle --days 7         # Only PRs updated in the last week
    needle --org my-company # Only PRs from one org
"""

__version__ = "0.1.0"
__author__ = "Needle"
