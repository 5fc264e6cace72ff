"""Release Tagger.

Correlates pull requests and issues with the release tags of a GitHub
repository to decide which release first contained each change, and
resolves the real closing date of every issue.
"""

__version__ = "0.1.0"
