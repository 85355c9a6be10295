import asyncio
import os
from abc import ABC, abstractmethod

import requests

from .utils import get_cache_dir, logger

HEADERS = {"user-agent": "https://github.com/cyrup-ai/codeskew script"}
DEFAULT_INCLUDE_URL = "https://compute-toys.github.io/include/"
PACKAGE_INCLUDE_DIR = os.path.join(os.path.dirname(__file__), "include")


class IncludeResolver(ABC):
    """
    Abstract Base Class for resolving ``#include`` paths to shader text.
    """

    @abstractmethod
    async def fetch(self, path: str):
        """
        Resolve a logical include path.

        Args:
            path (str): The path as written in the directive, ``<name>`` includes
                arrive as ``std/name``.

        Returns:
            str or None: The shader text, or None if the include does not exist.
        """
        pass


class DictIncludeResolver(IncludeResolver):
    """Resolves includes from an in-memory mapping of path to text."""

    def __init__(self, includes=None):
        self.includes = dict(includes or {})

    async def fetch(self, path):
        return self.includes.get(path)


class FileIncludeResolver(IncludeResolver):
    """
    Resolves includes from one or more directories, the ``.wgsl`` suffix is optional.
    Parameters:
        *directories (str): directories to search in order. Defaults to the includes shipped with codeskew.
    """

    def __init__(self, *directories):
        self.directories = list(directories) or [PACKAGE_INCLUDE_DIR]

    def _find(self, path):
        for directory in self.directories:
            root = os.path.abspath(directory)
            for candidate in (path, path + ".wgsl"):
                filename = os.path.abspath(os.path.join(root, candidate))
                # paths can't escape the include directory
                if os.path.commonpath([root, filename]) != root:
                    continue
                if os.path.isfile(filename):
                    return filename
        return None

    async def fetch(self, path):
        filename = self._find(path)
        if filename is None:
            return None
        with open(filename, "r", encoding="utf-8") as f:
            return f.read()


class HttpIncludeResolver(IncludeResolver):
    """
    Fetches includes from ``{base_url}{path}.wgsl``. The request runs in a worker thread.
    Parameters:
        base_url (str): Defaults to the ``CODESKEW_INCLUDE_URL`` environment variable or the compute.toys include repository.
        use_cache (bool): keep fetched includes in the user cache directory. Default is True.
        timeout (float): request timeout in seconds. Default is 10.
    """

    def __init__(self, base_url=None, use_cache=True, timeout=10.0):
        if base_url is None:
            base_url = os.environ.get("CODESKEW_INCLUDE_URL", DEFAULT_INCLUDE_URL)
        if not base_url.endswith("/"):
            base_url += "/"
        self.base_url = base_url
        self.use_cache = use_cache
        self.timeout = timeout

    def _cache_path(self, path):
        return os.path.join(get_cache_dir("includes"), path.replace("/", "__") + ".wgsl")

    def _download(self, path):
        url = f"{self.base_url}{path}.wgsl"
        if self.use_cache:
            cache_path = self._cache_path(path)
            if os.path.exists(cache_path):
                with open(cache_path, "r", encoding="utf-8") as f:
                    return f.read()
        try:
            response = requests.get(url, headers=HEADERS, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.warning(f"Failed to fetch include {url}: {e}")
            return None
        if response.status_code != 200:
            logger.warning(
                f"Failed to fetch include {url} with status code {response.status_code}"
            )
            return None
        code = response.text
        if self.use_cache:
            with open(self._cache_path(path), "w", encoding="utf-8") as f:
                f.write(code)
        return code

    async def fetch(self, path):
        return await asyncio.to_thread(self._download, path)


class ChainIncludeResolver(IncludeResolver):
    """Asks each resolver in turn, the first hit wins."""

    def __init__(self, *resolvers):
        self.resolvers = list(resolvers)

    async def fetch(self, path):
        for resolver in self.resolvers:
            code = await resolver.fetch(path)
            if code is not None:
                return code
        return None


def default_include_resolver() -> IncludeResolver:
    """The packaged includes, falling back to the online include repository."""
    return ChainIncludeResolver(FileIncludeResolver(), HttpIncludeResolver())
