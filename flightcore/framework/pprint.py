# Copyright (C) 2024 Collimator, Inc.
# SPDX-License-Identifier: AGPL-3.0-only
#
# This program is free software: you can redistribute it and/or modify it under
# the terms of the GNU Affero General Public License as published by the Free
# Software Foundation, version 3. This program is distributed in the hope that it
# will be useful, but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the GNU Affero General
# Public License for more details.  You should have received a copy of the GNU
# Affero General Public License along with this program. If not, see
# <https://www.gnu.org/licenses/>.

"""Pretty-printing utilities"""

BOLD = "\033[1m"
GREEN = "\033[32m"
BLUE = "\033[34m"
CYAN = "\033[36m"
LIGHTGREY = "\033[37m"
RESET = "\033[0m"
RIGHT_ARROW = "→"


def _state_range(system) -> str:
    if system.size == 0:
        return ""
    sl = system.slice
    return f" {LIGHTGREY}x[{sl.start}:{sl.stop}]{RESET}"


def pprint_fancy(prefix: str, system, with_links=True) -> str:
    """Helper to pretty-print a System node with colored output."""
    s = f"{prefix}│──"
    s += f" {BOLD}{GREEN}{system.name or 'root'}{RESET}"
    s += f" <{BOLD}{system.component.__class__.__name__}{RESET}>"
    s += _state_range(system)

    links = []
    if with_links and system.parent is not None:
        for conn in system.parent.connections:
            if conn.source != system.name:
                continue
            link = (
                f"{CYAN}{conn.source_path or 'y'}{RESET} {RIGHT_ARROW} "
                f"{GREEN}{conn.target}.{BLUE}{conn.target_path}{RESET}"
            )
            links.append(link)

    if not links:
        return f"{s}\n"

    return f"{s} [{', '.join(links)}]\n"


def pprint_plain(prefix: str, system) -> str:
    sl = system.slice
    return f"{prefix}|-- {system.name or 'root'} [{sl.start}:{sl.stop}]\n"
