import threading
from colorama import init as colorama_init, Fore, Style
from datetime import datetime
colorama_init(autoreset=True)

# probes for different obstacles log from worker threads
_PRINT_LOCK = threading.Lock()


class Log:
    def __init__(self, verbose: int = 1, prefix: str = "PIVOT"):
        self.verbose = verbose
        self.prefix = prefix
        self.PAY = Fore.MAGENTA

    def _time(self):
        return datetime.now().strftime("[%H:%M:%S]")

    def _fmt(self, level: str, color: str):
        return f"{self._time()} {Style.DIM}{self.prefix}{Style.RESET_ALL} {color}[{level}]{Style.RESET_ALL}"

    def _emit(self, line: str):
        with _PRINT_LOCK:
            print(line)

    def info(self, msg: str):
        if self.verbose >= 1:
            self._emit(f"{self._fmt('INFO', Fore.CYAN)} {msg}")

    def warn(self, msg: str):
        if self.verbose >= 0:
            self._emit(f"{self._fmt('WARNING', Fore.YELLOW)} {msg}")

    def debug(self, msg: str):
        if self.verbose >= 2:
            self._emit(f"{self._fmt('DEBUG', Fore.MAGENTA)} {msg}{Style.RESET_ALL}")

    def decay(self, family: str, scores):
        if self.verbose >= 0:
            trail = " → ".join(f"{s:.2f}" for s in scores)
            self._emit(f"{self._fmt('DECAY', Fore.RED)} confidence decay in "
                       f"{family} {Style.DIM}({trail}){Style.RESET_ALL}")
