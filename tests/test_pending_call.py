#+
# Copyright 2017 Lawrence D'Oliveiro <ldo@geek-central.gen.nz>.
# Licensed under the GNU Lesser General Public License v2.1 or later.
#-

import threading
from gc import collect
from unittest import TestCase, main, mock
from weakref import ref as weak_ref

import dbusglue
from dbusglue import \
    DBusNoMemory, \
    PendingCall

class FakeCallHandle :
    "stands in for a libdbus pending call, firing the notify function on request."

    def __init__(self, accept_notify = True, reply = 0x1234) :
        self.accept_notify = accept_notify
        self.reply = reply
        self.notify = None
        self.completed = False
        self.cancelled = 0
        self.blocked = 0
        self.unrefs = 0
    #end __init__

    def set_notify(self, function, user_data, free_user_data = None) :
        if self.accept_notify :
            self.notify = (function, user_data, free_user_data)
        #end if
        return \
            self.accept_notify
    #end set_notify

    def cancel(self) :
        self.cancelled += 1
    #end cancel

    def get_completed(self) :
        return \
            self.completed
    #end get_completed

    def steal_reply(self) :
        reply = self.reply
        self.reply = None
        return \
            reply
    #end steal_reply

    def block(self) :
        self.blocked += 1
        self.fire()
    #end block

    def unref(self) :
        self.unrefs += 1
        if self.notify != None :
            function, user_data, free_user_data = self.notify
            self.notify = None
            if free_user_data != None :
                free_user_data(user_data)
            #end if
        #end if
    #end unref

    def fire(self) :
        self.completed = True
        function, user_data, free_user_data = self.notify
        function(self, user_data)
    #end fire

#end FakeCallHandle

class RecordingHandler :

    def __init__(self, calls) :
        self.calls = calls
    #end __init__

    def __call__(self, message) :
        self.calls.append(message)
    #end __call__

#end RecordingHandler

class TestPendingCall(TestCase) :

    def setUp(self) -> None :
        patcher = mock.patch.object(dbusglue.Message, "consume")
        self.consume = patcher.start()
        self.consume.side_effect = lambda raw : ("message", raw)
        self.addCleanup(patcher.stop)
    #end setUp

    def test_cannot_instantiate(self) -> None :
        with self.assertRaises(TypeError) :
            PendingCall()
        #end with
        with self.assertRaises(TypeError) :
            PendingCall(FakeCallHandle(), print)
        #end with
    #end test_cannot_instantiate

    def test_reply_delivered_once(self) -> None :
        calls = []
        handle = FakeCallHandle()
        pending = PendingCall._consume(handle, calls.append)
        self.assertFalse(pending.completed)
        handle.fire()
        self.assertTrue(pending.completed)
        self.assertEqual(calls, [("message", 0x1234)])
        self.consume.assert_called_once_with(0x1234)
        with self.assertWarns(UserWarning) :
            handle.fire()
        #end with
        self.assertEqual(len(calls), 1)
    #end test_reply_delivered_once

    def test_handler_released_after_reply(self) -> None :
        calls = []
        handler = RecordingHandler(calls)
        handler_ref = weak_ref(handler)
        handle = FakeCallHandle()
        pending = PendingCall._consume(handle, handler)
        del handler
        collect()
        self.assertIsNotNone(handler_ref())
        handle.fire()
        collect()
        self.assertIsNone(handler_ref())
        self.assertEqual(len(calls), 1)
        self.assertIsNotNone(pending)
    #end test_handler_released_after_reply

    def test_cancel(self) -> None :
        calls = []
        handler = RecordingHandler(calls)
        handler_ref = weak_ref(handler)
        handle = FakeCallHandle()
        pending = PendingCall._consume(handle, handler)
        del handler
        pending.cancel()
        collect()
        self.assertEqual(handle.cancelled, 1)
        self.assertIsNone(handler_ref())
        handle.fire()
        self.assertEqual(calls, [])
        pending.cancel()
        self.assertEqual(handle.cancelled, 2)
    #end test_cancel

    def test_dispose_releases_handle_and_handler(self) -> None :
        calls = []
        handler = RecordingHandler(calls)
        handler_ref = weak_ref(handler)
        handle = FakeCallHandle()
        pending = PendingCall._consume(handle, handler)
        pending_ref = weak_ref(pending)
        del handler, pending
        collect()
        self.assertIsNone(pending_ref())
        self.assertIsNone(handler_ref())
        self.assertEqual(handle.unrefs, 1)
        self.assertEqual(calls, [])
    #end test_dispose_releases_handle_and_handler

    def test_close(self) -> None :
        handle = FakeCallHandle()
        pending = PendingCall._consume(handle, print)
        pending.close()
        pending.close()
        self.assertEqual(handle.unrefs, 1)
        with self.assertRaises(ValueError) :
            pending.block()
        #end with
        with self.assertRaises(ValueError) :
            pending.completed
        #end with
        pending.cancel()
        self.assertEqual(handle.cancelled, 0)
        del pending
        collect()
        self.assertEqual(handle.unrefs, 1)
    #end test_close

    def test_block(self) -> None :
        calls = []
        handle = FakeCallHandle()
        pending = PendingCall._consume(handle, calls.append)
        pending.block()
        self.assertEqual(handle.blocked, 1)
        self.assertTrue(pending.completed)
        self.assertEqual(len(calls), 1)
    #end test_block

    def test_registration_failure(self) -> None :
        calls = []
        handler = RecordingHandler(calls)
        handler_ref = weak_ref(handler)
        handle = FakeCallHandle(accept_notify = False)
        with self.assertRaises(DBusNoMemory) as cm :
            PendingCall._consume(handle, handler)
        #end with
        self.assertIsInstance(cm.exception, MemoryError)
        del handler, cm
        collect()
        self.assertEqual(handle.cancelled, 1)
        self.assertEqual(handle.unrefs, 1)
        self.assertIsNone(handler_ref())
        self.assertEqual(calls, [])
    #end test_registration_failure

    def test_notify_without_reply(self) -> None :
        calls = []
        handle = FakeCallHandle(reply = None)
        pending = PendingCall._consume(handle, calls.append)
        with self.assertLogs("dbusglue", level = "WARNING") :
            with self.assertWarns(UserWarning) :
                handle.fire()
            #end with
        #end with
        self.assertEqual(calls, [])
        self.consume.assert_not_called()
        pending.close()
    #end test_notify_without_reply

    def test_handler_exception_logged(self) -> None :

        def handler(message) :
            raise RuntimeError("handler blew up")
        #end handler

        handle = FakeCallHandle()
        pending = PendingCall._consume(handle, handler)
        with self.assertLogs("dbusglue", level = "ERROR") as logs :
            handle.fire()
        #end with
        self.assertIn("handler blew up", "\n".join(logs.output))
        self.assertTrue(pending.completed)
    #end test_handler_exception_logged

    def test_handler_runs_under_host_lock(self) -> None :
        seen = []

        def try_lock() :
            acquired = dbusglue.host_lock.acquire(blocking = False)
            if acquired :
                dbusglue.host_lock.release()
            #end if
            seen.append(acquired)
        #end try_lock

        def handler(message) :
            other = threading.Thread(target = try_lock)
            other.start()
            other.join()
        #end handler

        handle = FakeCallHandle()
        pending = PendingCall._consume(handle, handler)
        handle.fire()
        self.assertEqual(seen, [False])
        try_lock()
        self.assertEqual(seen, [False, True])
        pending.close()
    #end test_handler_runs_under_host_lock

    def test_reply_from_other_thread(self) -> None :
        calls = []
        handle = FakeCallHandle()
        pending = PendingCall._consume(handle, calls.append)
        worker = threading.Thread(target = handle.fire)
        worker.start()
        worker.join()
        self.assertEqual(calls, [("message", 0x1234)])
        pending.close()
    #end test_reply_from_other_thread

    def test_library_frees_user_data(self) -> None :
        calls = []
        handler = RecordingHandler(calls)
        handler_ref = weak_ref(handler)
        handle = FakeCallHandle()
        pending = PendingCall._consume(handle, handler)
        del handler
        function, user_data, free_user_data = handle.notify
        free_user_data(user_data)
        collect()
        self.assertIsNone(handler_ref())
        handle.fire()
        self.assertEqual(calls, [])
        pending.close()
    #end test_library_frees_user_data

#end TestPendingCall

if __name__ == "__main__" :
    main()
#end if
