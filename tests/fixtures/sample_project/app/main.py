"""Entry point of the sample application."""

from .helpers import slugify
from . import models


def run(title: str) -> str:
    user = models.User("ada")
    return f"{user.name}:{slugify(title)}"
