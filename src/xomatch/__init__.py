"""xomatch package exposing the match rules, lifecycle service, and the web application."""

__version__ = "0.1.0"

from .game import GameState, apply_move, check_winner
from .service import MatchService
from .api import app, create_app

__all__ = ["GameState", "MatchService", "__version__", "app", "apply_move", "check_winner", "create_app"]
