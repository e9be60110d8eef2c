# telfs

`telfs` stores files as fixed-size chunks, each held as one message in a
remote channel. This package is the data path for that storage, plus the
pieces around it:

- **Ciphers** (`telfs.ciphers`). Every chunk passes through a cipher on
  its way out and again on its way back in.
  - `NoopCipher` stores plaintext.
  - `AesGcmCipher` is AES-256-GCM with a random nonce. Each ciphertext is
    bound to its `(ino, idx)` slot and will not open in any other slot.
  - `ConvergentCipher` is deterministic AES-256-GCM: the same plaintext
    under the same key always gives the same bytes, whatever the slot.
  - `is_dedup_safe(cipher)` reports whether a cipher declares itself
    deterministic. This is true for `NoopCipher` and `ConvergentCipher`.
- **Key handling** (`telfs.keys`):
  - Argon2id passphrase derivation: `derive_key` and `ArgonParams`.
  - Random salts and data-encryption keys: `new_salt` and `new_dek`.
  - AES-GCM key wrapping: `wrap_dek` and `unwrap_dek`.
- **Canary** (`telfs.cryptostate`). `seal_canary` and `verify_canary`
  detect a wrong key before any user data is read. This module also holds
  the key names and the cipher mode names (`MODE_AES_GCM_V1`, `_V2` and
  `_V3`) used to record encryption state.
- **Configuration** (`telfs.config`). Profiles and `config.toml`, with
  overrides taken from environment variables.
- **Chunk metadata** (`telfs.store`). `MetaStore` is backed by SQLite and
  holds three things: inode sizes, the chunk map, and a content-hash index
  of uploaded chunks.
- **Chunk pipeline**:
  - `iter_chunks` (`telfs.chunker`) splits a stream into chunks.
  - `ChunkCache` (`telfs.cache`) is a disk-backed LRU cache of chunks.
  - `ChunkReader` (`telfs.reader`) serves random-offset reads and fetches
    the next chunks ahead of the reader.
  - `ChunkWriter` (`telfs.writer`) buffers dirty chunks and uploads them
    in the background.

## Ciphers

```python
import os
from telfs.ciphers import AesGcmCipher, ConvergentCipher, AuthenticationError, is_dedup_safe

key = os.urandom(32)

aead = AesGcmCipher(key)
sealed = aead.seal(42, 7, b"hello chunk")
assert aead.open(42, 7, sealed) == b"hello chunk"
try:
    aead.open(42, 8, sealed)          # wrong slot
except AuthenticationError:
    pass

conv = ConvergentCipher(key)
assert conv.seal(1, 0, b"same") == conv.seal(9, 3, b"same")
assert is_dedup_safe(conv) and not is_dedup_safe(aead)
```

On the wire, a sealed chunk is a 12-byte nonce followed by the ciphertext
and its 16-byte tag.

Failures raise these errors:

- A key that is not 32 bytes long raises `ValueError`.
- A ciphertext too short to hold a nonce and a tag raises `ValueError`.
- A ciphertext that fails to authenticate raises `AuthenticationError`.

## Keys and canary

```python
from telfs.ciphers import AesGcmCipher
from telfs.cryptostate import seal_canary, verify_canary
from telfs.keys import ArgonParams, derive_key, new_salt, new_dek, wrap_dek, unwrap_dek

passphrase = b"password"
salt = new_salt()
params = ArgonParams(time=1, memory=8 * 1024, threads=1)
kek = derive_key(passphrase, salt, params)

dek = new_dek()
wrapped = wrap_dek(kek, dek)
assert unwrap_dek(kek, wrapped) == dek

cipher = AesGcmCipher(dek)
canary = seal_canary(cipher)
verify_canary(cipher, canary)   # raises CanaryError on a wrong key
```

`default_argon_params()` returns time=3, memory=64 MiB (given in KiB) and
threads=4.

`marshal_argon_params` encodes the parameters as compact JSON, and
`unmarshal_argon_params` decodes them again. `unwrap_dek` raises
`AuthenticationError` when the KEK is wrong or the wrapped blob has been
tampered with; the two cases cannot be told apart.

## Profiles and configuration

Each profile lives in `$XDG_CONFIG_HOME/telfs/profiles/<name>/`. When
`XDG_CONFIG_HOME` is not set, the root is `~/.config/telfs/profiles/<name>/`.

The active profile is chosen in this order:

1. the `TELFS_PROFILE` environment variable;
2. the name stored by `set_active_profile(name)`.

If neither is set, `default_dir()` raises `NoActiveProfileError`.
`active_profile()` returns `""` in that case, and also when the stored
name is not valid.

Profile names may contain only ASCII letters, digits, `-` and `_`. For any
other name, `validate_profile_name` raises `InvalidProfileNameError`.

`load()` reads the `config.toml` of the active profile. `load_from_dir(path)`
reads the one in the given directory, and creates that directory if it is
missing. These environment variables override the file:

| Variable         | Overrides  |
|------------------|------------|
| `TELFS_API_ID`   | `api_id`   |
| `TELFS_API_HASH` | `api_hash` |
| `TELFS_PHONE`    | `phone`    |
| `TELFS_DC`       | `dc`       |

`Config.save()` writes the file atomically, with owner-only permissions.

`Config.require_api()` and `Config.require_channel()` raise `ConfigError`
when a required setting is missing. `Config.effective_auth_mode()` returns
`AuthMode.BOT` only when `auth_mode` is `"bot"`; for any other value it
returns `AuthMode.USER`.

The paths of a profile's files are available as `config_path`,
`session_path`, `db_path` and `cache_path`.

## Chunk pipeline

The default chunk size is 4 MiB. Only the last chunk of a file may be
shorter.

`ChunkCache` keeps decrypted chunks on disk, one file per chunk, named
`<ino>-<idx>.bin`, and evicts the least recently used chunks once it holds
more than its cap (1 GiB by default). A new cache adopts the files it
finds in its directory, so cached chunks are still there after a restart.

The package does not talk to a channel itself. You supply the transport
by implementing two abstract classes:

- `Fetcher.fetch(key, tg_message_id)` returns the stored bytes of a message;
- `Uploader.upload_document(stream, filename, caption)` stores bytes and
  returns the new message id.

```python
import tempfile
from telfs.cache import ChunkCache, Fetcher
from telfs.reader import ChunkReader
from telfs.store import MetaStore
from telfs.writer import ChunkWriter, Uploader


class MemoryChannel(Uploader, Fetcher):
    def __init__(self):
        self.messages = {}

    def upload_document(self, stream, filename, caption):
        msg_id = len(self.messages) + 1
        self.messages[msg_id] = stream.read()
        return msg_id

    def fetch(self, key, tg_message_id):
        return self.messages[tg_message_id]


meta = MetaStore()                      # in-memory SQLite by default
ino = meta.create_file()
channel = MemoryChannel()
cache = ChunkCache(tempfile.mkdtemp(), 0, channel)

with ChunkWriter(meta, cache, channel, None, ino, chunk_size=10) as writer:
    writer.write_at(b"hello world", 0)
    writer.flush()

with ChunkReader(meta, cache, 10) as reader:
    assert reader.read_at(ino, 5, 6) == b"world"
```

`ChunkReader.read_at(ino, size, offset)` returns the bytes it read. A read
that runs past the end of the file returns fewer bytes than requested. A
chunk missing from the chunk map counts as the end of the file.

`ChunkWriter` works as a context manager; leaving the block calls `close()`.
Its methods:

- `write_at(data, offset)` writes into dirty chunks. Writing past the end
  of the file fills the gap with zeros.
- `truncate(size)` changes the file's size. Shrinking drops dirty chunks
  and chunk-map rows that lie past the new end.
- `flush()` uploads every dirty chunk, waits for all uploads to finish and
  records the final size.
- `close()` stops uploads that have not started and waits for the running
  ones. It does not flush.

The writer also has these properties:

- `size` is the logical size, including writes not yet flushed.
- `dirty_chunks` lists the indices of unflushed chunks.

When the dirty bytes exceed the writer's cap (256 MiB by default), the
oldest dirty chunks are uploaded in the background. At most four uploads
run at a time.

Upload failures are handled as follows:

- The first failed upload is sticky: later writes raise it.
- `flush()` clears the sticky error and tries the failed chunks again,
  since they are dirty once more.
- Using a closed writer raises `WriterClosedError`.

With a deterministic cipher (`NoopCipher` or `ConvergentCipher`), the
writer checks a chunk's SHA-256 against the content-hash index before it
uploads. If another live chunk already holds the same content, the writer
points the chunk map at that message instead of uploading again.

## What this package does not do

- It does not mount anything. There is no FUSE layer and no directory
  tree: `MetaStore` records only inode sizes, chunk rows and the
  content-hash index.
- It has no client for the message channel. Uploads and downloads go
  through the `Uploader` and `Fetcher` you supply.
- It has no command-line program. Profiles and configuration are managed
  through the functions in `telfs.config`.
- It does not collect garbage. Messages that are no longer referenced
  stay in the channel.