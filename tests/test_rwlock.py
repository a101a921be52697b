"""
Tests for the reader/writer lock.
"""

import threading
import time

import pytest

from codevec.vector_db.rwlock import ReadWriteLock


class TestReadWriteLock:

    def test_readers_share(self):
        lock = ReadWriteLock()
        inside = threading.Barrier(2, timeout=2)

        def reader():
            with lock.read_lock():
                inside.wait()

        threads = [threading.Thread(target=reader) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=3)
        assert not any(thread.is_alive() for thread in threads)

    def test_writer_excludes_readers(self):
        lock = ReadWriteLock()
        events = []

        def reader():
            with lock.read_lock():
                events.append("read")

        with lock.write_lock():
            thread = threading.Thread(target=reader)
            thread.start()
            time.sleep(0.05)
            events.append("write-done")
        thread.join(timeout=2)
        assert events == ["write-done", "read"]

    def test_writer_reentry(self):
        lock = ReadWriteLock()
        with lock.write_lock():
            with lock.write_lock():
                with lock.read_lock():
                    assert lock.write_held
            assert lock.write_held
        assert not lock.write_held

    def test_reader_reentry(self):
        lock = ReadWriteLock()
        with lock.read_lock():
            with lock.read_lock():
                pass

    def test_upgrade_refused(self):
        lock = ReadWriteLock()
        with lock.read_lock():
            with pytest.raises(RuntimeError):
                lock.acquire_write()

    def test_unbalanced_release(self):
        lock = ReadWriteLock()
        with pytest.raises(RuntimeError):
            lock.release_read()
        with pytest.raises(RuntimeError):
            lock.release_write()

    def test_waiting_writer_blocks_new_readers(self):
        lock = ReadWriteLock()
        order = []
        lock.acquire_read()

        def writer():
            with lock.write_lock():
                order.append("write")

        def late_reader():
            with lock.read_lock():
                order.append("read")

        writer_thread = threading.Thread(target=writer)
        writer_thread.start()
        time.sleep(0.05)
        reader_thread = threading.Thread(target=late_reader)
        reader_thread.start()
        time.sleep(0.05)
        lock.release_read()

        writer_thread.join(timeout=2)
        reader_thread.join(timeout=2)
        assert order == ["write", "read"]
