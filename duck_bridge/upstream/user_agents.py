from __future__ import annotations

import random

CHROME_VERSIONS = (
    "131.0.0.0",
    "132.0.0.0",
    "133.0.0.0",
    "134.0.0.0",
    "135.0.0.0",
    "136.0.0.0",
    "137.0.0.0",
    "138.0.0.0",
)

FIREFOX_VERSIONS = ("134.0", "135.0", "136.0", "137.0", "138.0", "139.0")

SAFARI_VERSIONS = ("17.6", "18.1", "18.3", "18.4", "18.5")

PLATFORMS = (
    "Windows NT 10.0; Win64; x64",
    "Macintosh; Intel Mac OS X 10_15_7",
    "X11; Linux x86_64",
)


def random_user_agent(rng: random.Random | None = None) -> str:
    """Desktop browser user-agent drawn from recent Chrome, Firefox and Safari releases."""
    chooser = rng or random
    family = chooser.choice(("chrome", "chrome", "chrome", "firefox", "safari"))
    if family == "firefox":
        version = chooser.choice(FIREFOX_VERSIONS)
        platform = chooser.choice(PLATFORMS)
        return f"Mozilla/5.0 ({platform}; rv:{version}) Gecko/20100101 Firefox/{version}"
    if family == "safari":
        version = chooser.choice(SAFARI_VERSIONS)
        return (
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 "
            f"(KHTML, like Gecko) Version/{version} Safari/605.1.15"
        )
    version = chooser.choice(CHROME_VERSIONS)
    platform = chooser.choice(PLATFORMS)
    return (
        f"Mozilla/5.0 ({platform}) AppleWebKit/537.36 "
        f"(KHTML, like Gecko) Chrome/{version} Safari/537.36"
    )
