"""
TarkHub Update Management System
Copyright (C) 2024 HOMESERVER LLC

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

import asyncio
import importlib
import logging
from concurrent.futures import ThreadPoolExecutor

# Import shared utilities
from .utils.index import log_message

# Library use stays silent until the application configures logging
logging.getLogger("tarkhub").addHandler(logging.NullHandler())

__all__ = [
    'log_message',
    'run_update',
    'run_updates_async',
]


def run_update(module_path, args=None, callback=None):
    """
    Run a single artifact module.

    Args:
        module_path (str): Import path to the module or module name ("spt", "fika")
        args (list, optional): Arguments to pass to the module's main function
        callback (callable, optional): Function to call when the module completes

    Returns:
        Any: Result from the module's main function
    """
    result = None
    try:
        # Handle both full import paths and simple module names
        if "." not in module_path:
            module_path = f"modules.{module_path}"

        mod = importlib.import_module(f".{module_path}", package=__name__)
        if hasattr(mod, 'main'):
            log_message(f"Running update: {module_path}")
            result = mod.main(args)
            log_message(f"Completed update: {module_path}")
        else:
            log_message(f"Module {module_path} has no main(args) function.", "ERROR")
    except (ImportError, OSError, ValueError) as e:
        log_message(f"Error running update for {module_path}: {e}", "ERROR")

    if callback and callable(callback):
        callback(module_path, result)

    return result


async def run_updates_async(updates, max_workers=None):
    """
    Run multiple modules asynchronously using a thread pool.

    Args:
        updates (list): List of dicts with 'module_path' and 'args' keys
        max_workers (int, optional): Maximum number of concurrent workers

    Returns:
        dict: Mapping of module paths to their results
    """
    results = {}

    def update_callback(module_path, result):
        results[module_path] = result

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        loop = asyncio.get_running_loop()
        futures = []

        for update in updates:
            module_path = update.get('module_path')
            args = update.get('args', [])
            future = loop.run_in_executor(
                executor,
                lambda mp=module_path, a=args: run_update(mp, a, update_callback)
            )
            futures.append(future)

        await asyncio.gather(*futures)

    return results
