"""
Tensor Buffers
==============

The foundational resource of the library: a flat float32 buffer interpreted
as a 2D (entities x length) matrix.

Every tensor is owned by whoever allocated it and must be released exactly
once. Ownership is made explicit so that training loops can't silently keep
stale intermediate results around:
- Tensor.new / Tensor.like / Tensor.from_array allocate owned buffers
- Tensor.reshape wraps caller memory without copying (non-owning view)
- Tensor.free releases the buffer, a second free raises TensorReleasedError
- TensorScope frees everything allocated inside a with block
- TensorMap tracks live tensors keyed by graph node
"""

from collections import namedtuple

import numpy as np

from .exceptions import ShapeError, TensorReleasedError

DTYPE = np.float32


class TensorInfo(namedtuple('TensorInfo', ['height', 'width', 'channels'])):
    """
    Shape of a single sample volume, independent of the number of entities.

    Args:
        height: Height of each 2D slice
        width: Width of each 2D slice
        channels: Number of stacked slices (depth)
    """

    __slots__ = ()

    def __new__(cls, height, width, channels):
        if height <= 0 or width <= 0:
            raise ValueError("The height and width must be positive values")
        if channels <= 0:
            raise ValueError("The number of channels must be positive")
        return super().__new__(cls, int(height), int(width), int(channels))

    @classmethod
    def linear(cls, size):
        return cls(1, 1, size)

    @classmethod
    def image(cls, height, width):
        return cls(height, width, 1)

    @classmethod
    def volume(cls, height, width, channels):
        return cls(height, width, channels)

    @property
    def size(self):
        return self.height * self.width * self.channels

    @property
    def slice_size(self):
        return self.height * self.width

    def to_dict(self):
        return {
            'Height': self.height,
            'Width': self.width,
            'Channels': self.channels,
            'Size': self.size,
        }

    def __repr__(self):
        return f"TensorInfo({self.height}x{self.width}x{self.channels})"


class Tensor:
    """
    Owned 2D float32 buffer with explicit release.

    Use the class constructors instead of calling __init__ directly.

    Example:
        >>> with Tensor.new(4, 10) as t:
        ...     t.data[:] = 1.0
        >>> t.is_null
        True
    """

    __slots__ = ('_data', '_owned')

    def __init__(self, data, owned=True):
        self._data = data
        self._owned = owned

    # ------------------------------------------------------------------
    # Allocation
    # ------------------------------------------------------------------

    @classmethod
    def new(cls, entities, length, clean=True):
        """
        Allocate a new (entities, length) tensor.

        Args:
            entities: Number of rows (samples)
            length: Number of columns (features per sample)
            clean: Zero the buffer, otherwise it is left uninitialized
        """
        if entities <= 0 or length <= 0:
            raise ShapeError(f"Invalid tensor shape ({entities}, {length})")
        alloc = np.zeros if clean else np.empty
        return cls(alloc((entities, length), dtype=DTYPE))

    @classmethod
    def like(cls, other, clean=True):
        return cls.new(other.entities, other.length, clean)

    @classmethod
    def from_array(cls, array):
        """Copy a 1D (single sample) or 2D array into a new tensor."""
        array = np.asarray(array, dtype=DTYPE)
        if array.ndim == 1:
            array = array.reshape(1, -1)
        elif array.ndim > 2:
            array = array.reshape(array.shape[0], -1)
        elif array.ndim == 0:
            raise ShapeError("Scalars can't be converted to a tensor")
        if array.size == 0:
            raise ShapeError("Empty arrays can't be converted to a tensor")
        return cls(np.array(array, dtype=DTYPE, order='C', copy=True))

    @classmethod
    def reshape(cls, buffer, entities, length):
        """
        Wrap caller-managed memory as a non-owning tensor view.

        The buffer must be a C-contiguous float32 array with exactly
        entities * length elements. Writes through the view are visible
        in the original buffer.
        """
        if not isinstance(buffer, np.ndarray) or buffer.dtype != DTYPE:
            raise ShapeError("The buffer must be a float32 numpy array")
        if not buffer.flags.c_contiguous:
            raise ShapeError("The buffer must be C-contiguous")
        if buffer.size != entities * length:
            raise ShapeError(f"Can't view {buffer.size} values as ({entities}, {length})")
        return cls(buffer.reshape(entities, length), owned=False)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def data(self):
        """The underlying (entities, length) array."""
        if self._data is None:
            raise TensorReleasedError("The tensor has already been released")
        return self._data

    @property
    def entities(self):
        return self.data.shape[0]

    @property
    def length(self):
        return self.data.shape[1]

    @property
    def size(self):
        return self.data.size

    @property
    def shape(self):
        return self.data.shape

    @property
    def is_null(self):
        return self._data is None

    @property
    def owned(self):
        return self._owned

    # ------------------------------------------------------------------
    # Lifetime
    # ------------------------------------------------------------------

    def free(self):
        """Release the buffer. Views only drop their reference."""
        if self._data is None:
            raise TensorReleasedError("The tensor has already been released")
        self._data = None

    def try_free(self):
        if self._data is not None:
            self._data = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.try_free()
        return False

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def match_shape(self, entities, length=None):
        """Check the shape against (entities, length) or another tensor."""
        if isinstance(entities, Tensor):
            entities, length = entities.entities, entities.length
        return self.entities == entities and self.length == length

    def view(self, entities, length):
        """Non-owning reinterpretation of the same buffer with a new shape."""
        return Tensor.reshape(self.data, entities, length)

    def duplicate(self):
        return Tensor(self.data.copy())

    def overwrite(self, other):
        if not self.match_shape(other):
            raise ShapeError(f"Can't overwrite a {self.shape} tensor with a {other.shape} tensor")
        np.copyto(self.data, other.data)

    def to_array(self, flatten=False):
        array = self.data.copy()
        return array.ravel() if flatten else array

    def content_equals(self, other, delta=1e-6):
        """
        Tolerance based comparison.

        Floating point rounding differs across kernels, so a relative/absolute
        tolerance is used instead of bitwise equality.
        """
        if other is None or self.is_null or other.is_null:
            return False
        if not self.match_shape(other):
            return False
        return bool(np.allclose(self.data, other.data, rtol=delta, atol=delta, equal_nan=True))

    def __repr__(self):
        if self._data is None:
            return "Tensor(released)"
        kind = "owned" if self._owned else "view"
        return f"Tensor({self.entities}x{self.length}, {kind})"


class TensorScope:
    """
    Arena for transient tensors.

    Every tensor allocated or tracked through the scope is released when the
    with block exits, unless ownership was handed back with detach().

    Example:
        >>> with TensorScope() as scope:
        ...     z = scope.new(32, 100)
        ...     a = scope.like(z)
    """

    def __init__(self):
        self._tensors = []

    def new(self, entities, length, clean=True):
        return self.track(Tensor.new(entities, length, clean))

    def like(self, other, clean=True):
        return self.track(Tensor.like(other, clean))

    def track(self, tensor):
        if tensor is not None:
            self._tensors.append(tensor)
        return tensor

    def detach(self, tensor):
        """Stop tracking a tensor, the caller becomes its owner."""
        self._tensors = [t for t in self._tensors if t is not tensor]
        return tensor

    def free_all(self):
        for tensor in self._tensors:
            tensor.try_free()
        self._tensors = []

    def __len__(self):
        return sum(1 for t in self._tensors if not t.is_null)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.free_all()
        return False


class TensorMap:
    """
    Ownership map from keys (usually graph nodes) to live tensors.

    Replacing an entry releases the previous tensor, pop() hands ownership
    back to the caller and release() frees a single entry.
    """

    def __init__(self):
        self._map = {}

    def set(self, key, tensor):
        previous = self._map.get(key)
        if previous is not None and previous is not tensor:
            previous.try_free()
        self._map[key] = tensor

    def get(self, key, default=None):
        return self._map.get(key, default)

    def pop(self, key):
        return self._map.pop(key)

    def release(self, key):
        tensor = self._map.pop(key, None)
        if tensor is not None:
            tensor.try_free()

    def free_all(self):
        for tensor in self._map.values():
            tensor.try_free()
        self._map.clear()

    def keys(self):
        return self._map.keys()

    def __setitem__(self, key, tensor):
        self.set(key, tensor)

    def __getitem__(self, key):
        return self._map[key]

    def __contains__(self, key):
        return key in self._map

    def __len__(self):
        return len(self._map)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.free_all()
        return False
