"""In-room command bot.

Messages starting with the command prefix get an answer posted into the
same room under the bot's name. Commands are pure text functions: no I/O
and no access to the registries.
"""
import random
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from ..config import settings
from ..logger import get_logger

logger = get_logger(__name__)

COMMAND_PREFIX = "!"

RULES = "1. Be respectful. 2. No spam. 3. Have fun!"
JOKES = [
    "Why don't scientists trust atoms? Because they make up everything!",
    "What do you call a fake noodle? An impasta.",
    "Why did the scarecrow win an award? Because he was outstanding in his field!",
]
MAX_DIE_SIDES = 1000


class ChatBot:
    def __init__(self, name: str = settings.BOT_NAME, rng: Optional[random.Random] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.name = name
        self._rng = rng or random.Random()
        self._clock = clock
        self._started = clock()
        self._commands: Dict[str, Callable[[List[str]], str]] = {
            "help": self._help,
            "ping": lambda args: "Pong!",
            "rules": lambda args: RULES,
            "joke": lambda args: self._rng.choice(JOKES),
            "flip": self._flip,
            "roll": self._roll,
            "time": self._time,
            "uptime": self._uptime,
            "info": lambda args: f"I am {self.name}, here to help and make the chat more fun!",
        }

    def respond(self, content: str) -> Optional[str]:
        """the answer to a command message, or None for ordinary chat"""
        if not content.startswith(COMMAND_PREFIX):
            return None
        parts = content[len(COMMAND_PREFIX):].split()
        if not parts:
            return None

        command = self._commands.get(parts[0].lower())
        if command is None:
            return f"Unknown command. Type '{COMMAND_PREFIX}help' to see a list of commands."
        logger.debug("Answering %s%s", COMMAND_PREFIX, parts[0].lower())
        return command(parts[1:])

    def _help(self, args: List[str]) -> str:
        names = ", ".join(COMMAND_PREFIX + name for name in self._commands)
        return f"Available commands: {names}"

    def _flip(self, args: List[str]) -> str:
        side = "Heads" if self._rng.random() > 0.5 else "Tails"
        return f"The coin landed on... **{side}!**"

    def _roll(self, args: List[str]) -> str:
        sides = 6
        if args and args[0].isdigit():
            sides = min(max(int(args[0]), 2), MAX_DIE_SIDES)
        return f"Rolling a {sides}-sided die... it landed on **{self._rng.randint(1, sides)}**!"

    def _time(self, args: List[str]) -> str:
        now = datetime.now(timezone.utc)
        return f"The current server time is {now:%Y-%m-%d %H:%M:%S} UTC."

    def _uptime(self, args: List[str]) -> str:
        elapsed = int(self._clock() - self._started)
        hours, rest = divmod(elapsed, 3600)
        minutes, seconds = divmod(rest, 60)
        return f"I have been online for {hours}h {minutes}m {seconds}s."
