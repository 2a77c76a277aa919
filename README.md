# sysbits

Small, dependency-free building blocks for systems work on POSIX hosts
(Linux in particular): socket helpers, memory-mapped files and arrays,
memory pools, an LRU cache and two threaded connection servers.

## Modules

### `sysbits.net`

Socket helpers built on `socket` and `select.poll`.

- `tcp_listen(port)` opens an IPv4 listening socket on all interfaces with
  `SO_REUSEADDR`, `SO_KEEPALIVE` and `TCP_NODELAY` set and a backlog of 128.
  `unix_listen(path)` does the same for a Unix-domain socket, removing a stale
  socket file first.
- `tcp_connect(ip, port)` connects to a dotted-quad address with Nagle
  disabled; `unix_connect(path)` connects to a Unix-domain socket.
- `send(sock, data)` writes as much as the socket takes without blocking and
  returns the byte count. `send_all(sock, data)` writes everything, polling
  whenever the socket is full. `send_vectored(sock, buffers)` writes a list of
  buffers in full with `sendmsg`.
- `recv(sock, size)` reads up to `size` bytes, stopping early when the socket
  would block; it raises `BrokenPipeError` if the peer closed before any byte
  arrived.
- `wait_for_io(sock, for_read, timeout_ms)` returns `(ready, error_events)`.
  `wait_for_io_or_timeout`, `wait_read` and `wait_write` return `True` when
  ready and `False` on timeout, and raise `BrokenPipeError` when the peer hung
  up. A negative timeout waits forever.
- `lingering_close(sock)` shuts down the write side, drains pending input once
  and closes. `set_nonblocking(sock)` accepts a socket or a raw descriptor.
  `is_socket_need_close(sock)` reports whether a TCP connection is in
  CLOSE_WAIT (it reads `TCP_INFO`, so it is Linux only).

```python
from sysbits import net

sock = net.tcp_connect("127.0.0.1", 8080)
if net.wait_write(sock, 1000):
    net.send_all(sock, b"client q=1")
reply = net.recv(sock, 65)
net.lingering_close(sock)
```

### `sysbits.mmap_util`

- `create_or_truncate(path, size)` makes sure a file exists and is at least
  `size` bytes long.
- `MappedFile.open(path, writable=False)` maps a whole file; `close()` unmaps it.
- `MappedFileArray.create(path, item_size, max_num)` writes a header
  (`version`, `max_num`, `cur_num`, `mmap_size`, `item_size`) followed by room
  for `max_num` items; `MappedFileArray.open(path, writable=False)` maps an
  existing one. `item(index)` returns a `memoryview` over one item; release
  such views before `close()`.
- Failures raise `MmapFileError`, an `OSError` whose `code` is one of
  `OPEN_FAIL`, `STAT_FAIL`, `MMAP_FAIL` or `TRUNC_FAIL`.

```python
from sysbits.mmap_util import MappedFileArray

with MappedFileArray.create("records.dat", 16, 100) as array:
    with array.item(0) as view:
        view[:5] = b"hello"

with MappedFileArray.open("records.dat") as array:
    with array.item(0) as view:
        print(bytes(view[:5]))
```

### `sysbits.lru`

`LRUCache(size, hash_size=1024)` holds at most `size` entries (at least two)
keyed by pairs of unsigned 32-bit integers. Setting a new key when full evicts
the least recently used entry; reads and writes refresh an entry. Data is
copied to `bytes` on every set. Methods: `set`, `set_many`, `get` (returns
`None` when missing), `get_many`, `delete` (returns whether the key was
present), `keys()` (most recent first), `in` and `len()`. All operations are
thread-safe.

```python
from sysbits.lru import LRUCache

cache = LRUCache(2)
cache.set(1, 2, b"a")
cache.set(3, 4, b"b")
cache.get(1, 2)        # b"a", now the most recent
cache.set(5, 6, b"c")  # evicts (3, 4)
```

### `sysbits.mempool`

`MemoryCache(block_size, block_num, dynamic_num)` hands out `Slot` objects,
each with a `memory` view of `block_size` bytes (at least 2). The first chunk
holds `block_num` slots; when every chunk is full a chunk of `dynamic_num`
slots is added. `free(slot)` returns a slot; a front chunk that becomes
entirely free is released, but the last chunk never is. `capacity`,
`free_count` and `chunk_count` report the pool's state; `close()` releases
everything. The pool is thread-safe.

### `sysbits.farray`

- `FileArray.create(path, block_size, block_num)` and
  `FileArray.load(path, writable=False)` keep `block_num` elements of
  `block_size` bytes in a file after a header of `elt_size`, `nelts` and
  `nalloc`. Elements are read and written by index (`array[i]`), `nelts` can
  be set, and `sync()` flushes to disk.
- `FileMemPool.create(path, elt_size, nalloc)` and `FileMemPool.load(path)`
  write and read a pool file whose header records `elt_size`, `nelts`,
  `nalloc`, `free_head` and `free_tail`; a fresh pool describes all elements
  as one free run, readable with `free_info(index)`.

### `sysbits.mmap_mempool`

`MmapMemPool(block_size, block_max_num, tag=None)` is a bump allocator over up
to `block_max_num` memory-mapped blocks. With a `tag`, block *i* is stored in
the file `<tag>.<i>` (parent directories are created) and `load()` maps the
block files that already exist; without one, blocks are anonymous memory.

- `alloc(size)` / `calloc(size)` return an `Allocation` (`block_idx`,
  `offset`, `size`) or raise `MemoryError` when no block has room.
- `read` and `write` copy bytes in and out; `usable_size` and `alloc_info`
  (an `AllocInfo`) describe an allocation.
- `ref` and `unref` keep a reference count (`ref_count`); dropping the last
  reference calls `free`, which pushes the allocation onto its block's
  recycle list, visible through `recycled(block_idx)`.
- `sync()` flushes file-backed blocks; `close()` unmaps them all.

```python
from sysbits.mmap_mempool import MmapMemPool

with MmapMemPool(4096, 4, tag="data/pool") as pool:
    piece = pool.alloc(100)
    pool.write(piece, b"hello")
    print(pool.read(piece, 5), pool.usable_size(piece))
```

### `sysbits.pipeline_pool`

`Pipeline(max_job_num=1024, recv_buf_len=1024, send_buf_len=0)` runs an
event loop (`run()`, on its own thread) that accepts connections from
`listen(sock)` or `listen_port(port)` and reads one request of up to
`recv_buf_len` bytes per connection into a `Job`. Worker threads take ready
jobs with `fetch_item(timeout=None)` (raising `TimeoutError` on timeout),
answer on `job.sock`, and hand the job back with
`reset_item(job.index, keep_alive)`, which either waits for the next request
or closes the connection. `close()` stops the loop and closes everything.

```python
import threading
from sysbits import net
from sysbits.pipeline_pool import Pipeline
from sysbits.simple import query_response

pipeline = Pipeline(max_job_num=64)
pipeline.listen_port(8080)
threading.Thread(target=pipeline.run, daemon=True).start()
while True:
    job = pipeline.fetch_item()
    net.send_all(job.sock, query_response(job.data))
    pipeline.reset_item(job.index, True)
```

### `sysbits.greeting_bonze`

`GreetingBonze(capacity=1024, in_size=128, out_size=5120, guest_fn=None)`
keeps one `Guest` per file descriptor below `capacity`; connections on higher
descriptors are closed. `serve()` accepts connections until `close()`; each
request is read in a background thread into the guest's `in_buf`. The request
then goes to `guest_fn(server, fd)`, or, without one, waits for `deal()`.
`Guest.request` holds the request and `Guest.write(data)` fills `out_buf`;
`send_off(fd, out_len)` sends that many bytes of it and starts the next read.

```python
from sysbits.greeting_bonze import GreetingBonze
from sysbits.simple import query_response

def answer(server, fd):
    guest = server.guest(fd)
    server.send_off(fd, guest.write(query_response(guest.request)))

server = GreetingBonze(capacity=2048, guest_fn=answer)
server.listen_port(8080)
server.serve()
```

### `sysbits.simple`

- `query_response(request)` builds a plain-text HTTP/1.0 answer whose body is
  the integer following `q=` in the request (or `0`, with a declared length of
  0, when there is none).
- `run_server(port, on_message)` accepts clients one at a time and passes
  every chunk they send to `on_message`, stopping when it returns a true value.
- `run_client(host, port, message, interval=1.0, count=None)` sends `message`
  every `interval` seconds and returns how many were sent.

## Command line

```
sysbits-simple server --port 1234
sysbits-simple client --host 127.0.0.1 --port 1234 --message client --interval 1 --count 5
```

The server prints every chunk it receives; the client prints how many
messages it sent.

## Limits

- `FileMemPool` only creates and reads its header and free-run records; it
  has no operations that allocate or free elements.
- `MmapMemPool` never reuses freed memory: `free` records allocations on the
  recycle list, but `alloc` only carves new space from the end of a block.
- The servers speak no protocol of their own beyond single reads and writes;
  `query_response` is the only request handler provided.
- The socket helpers use `select.poll` and Unix-domain sockets, so the package
  runs on POSIX systems only.

## Tests

The tests use pytest and live in `tests/`:

```
pip install -e .[test]
pytest
```