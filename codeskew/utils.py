import ctypes
import logging
import os
import sys

logger = logging.getLogger("codeskew")


def _set_log_level():
    # Set default level
    logger.setLevel(logging.WARN)
    # Set user-specified level
    level = os.getenv("CODESKEW_LOG_LEVEL", "")
    if level:
        try:
            if level.isnumeric():
                logger.setLevel(int(level))
            else:
                logger.setLevel(level.upper())
        except Exception:
            logger.warning(f"Invalid codeskew log level: {level}")


_set_log_level()


class UniformArray:
    """Convenience class to create a uniform array.

    Ensure that the order matches structs in the shader code.
    See https://www.w3.org/TR/WGSL/#alignment-and-size for reference on alignment.
    """

    def __init__(self, *args):
        # Analyse incoming fields
        fields = []
        byte_offset = 0
        for name, format, n in args:
            assert format in ("f", "i", "I")
            field = name, format, byte_offset, byte_offset + n * 4
            fields.append(field)
            byte_offset += n * 4
        # Get padding, an empty struct still needs a non-zero binding size
        nbytes = max(byte_offset, 16)
        while nbytes % 16:
            nbytes += 1
        # Construct memoryview object and a view for each field
        self._mem = memoryview((ctypes.c_uint8 * nbytes)()).cast("B")
        self._views = {}
        for name, format, i1, i2 in fields:
            self._views[name] = self._mem[i1:i2].cast(format)

    @property
    def mem(self):
        return self._mem

    @property
    def nbytes(self):
        return self._mem.nbytes

    def keys(self):
        return list(self._views.keys())

    def __contains__(self, key):
        return key in self._views

    def __getitem__(self, key):
        v = self._views[key].tolist()
        return v[0] if len(v) == 1 else v

    def __setitem__(self, key, val):
        m = self._views[key]
        n = m.shape[0]
        if n == 1:
            assert isinstance(val, (float, int))
            m[0] = val
        else:
            assert isinstance(val, (tuple, list))
            for i in range(n):
                m[i] = val[i]


def get_cache_dir(subdir="includes") -> os.PathLike:
    """
    returns the OS appropriate cache directory
    """
    if sys.platform.startswith("win"):
        cache_dir = os.path.join(os.environ["LOCALAPPDATA"], "codeskew")
    elif sys.platform.startswith("darwin"):
        cache_dir = os.path.join(os.environ["HOME"], "Library", "Caches", "codeskew")
    else:
        if "XDG_CACHE_HOME" in os.environ:
            cache_dir = os.path.join(os.environ["XDG_CACHE_HOME"], "codeskew")
        else:
            cache_dir = os.path.join(os.environ["HOME"], ".cache", "codeskew")
    cache_dir = os.path.join(cache_dir, subdir)
    try:
        os.makedirs(cache_dir, exist_ok=True)
    except OSError as e:
        raise OSError(f"Failed to create cache directory at {cache_dir}, due to {e}")
    return cache_dir
