#+
# Copyright 2017 Lawrence D'Oliveiro <ldo@geek-central.gen.nz>.
# Licensed under the GNU Lesser General Public License v2.1 or later.
#-

import os
from ctypes.util import find_library
from unittest import TestCase, main, mock, skipIf

import dbusglue
from dbusglue import \
    DBUS, \
    Array, \
    Connection, \
    DBusError, \
    DBusFailure, \
    Dictionary, \
    Message, \
    ObjectPath, \
    PendingCall, \
    Signature, \
    Struct

HAVE_LIBDBUS = find_library("dbus-1") != None

def new_call() :
    return \
        Message.new_method_call("org.example.Service", "/org/example/Thing", "org.example.Iface", "Frob")
#end new_call

class TestLibraryLoading(TestCase) :

    def test_missing_library(self) -> None :
        lib = dbusglue._LibDBus()
        with mock.patch.dict(os.environ, {dbusglue.LIBDBUS_ENV : "libdbusglue-no-such-library.so"}) :
            with self.assertRaises(DBusFailure) :
                lib.dbus_message_unref
            #end with
        #end with
    #end test_missing_library

    def test_timeouts(self) -> None :
        self.assertEqual(dbusglue._get_timeout(2.5), 2500)
        self.assertEqual(dbusglue._get_timeout(1), 1000)
        self.assertEqual(dbusglue._get_timeout(DBUS.TIMEOUT_USE_DEFAULT), DBUS.TIMEOUT_USE_DEFAULT)
        self.assertEqual(dbusglue._get_timeout(DBUS.TIMEOUT_INFINITE), DBUS.TIMEOUT_INFINITE)
    #end test_timeouts

#end TestLibraryLoading

@skipIf(not HAVE_LIBDBUS, "libdbus not available")
class TestMessage(TestCase) :

    def test_header(self) -> None :
        msg = new_call()
        self.assertEqual(msg.type, DBUS.MESSAGE_TYPE_METHOD_CALL)
        self.assertFalse(msg.is_error)
        self.assertEqual(msg.destination, "org.example.Service")
        self.assertEqual(msg.path, "/org/example/Thing")
        self.assertIsInstance(msg.path, ObjectPath)
        self.assertEqual(msg.interface, "org.example.Iface")
        self.assertEqual(msg.member, "Frob")
        self.assertEqual(msg.signature, "")
        self.assertEqual(msg.all_objects, [])
    #end test_header

    def test_no_reply(self) -> None :
        msg = new_call()
        self.assertFalse(msg.no_reply)
        msg.no_reply = True
        self.assertTrue(msg.no_reply)
    #end test_no_reply

    def test_basic_values(self) -> None :
        msg = new_call()
        msg.append_objects("ybnxdsogb", [7, True, -3, 1 << 40, 0.25, "hello", "/a/b", "a{sv}", False])
        self.assertEqual(msg.signature, "ybnxdsogb")
        objects = msg.all_objects
        self.assertEqual(objects, [7, True, -3, 1 << 40, 0.25, "hello", "/a/b", "a{sv}", False])
        self.assertIs(objects[1], True)
        self.assertIsInstance(objects[6], ObjectPath)
        self.assertIsInstance(objects[7], Signature)
    #end test_basic_values

    def test_out_of_range(self) -> None :
        with self.assertRaises(ValueError) :
            new_call().append_objects("y", [256])
        #end with
        with self.assertRaises(TypeError) :
            new_call().append_objects("s", [3])
        #end with
    #end test_out_of_range

    def test_guessed_signature(self) -> None :
        msg = new_call()
        msg.append_objects(None, [1, "two", Array([3, 4], signature = "u"), (5.0, "six")])
        self.assertEqual(msg.signature, "isau(ds)")
    #end test_guessed_signature

    def test_containers_decoded(self) -> None :
        msg = new_call()
        msg.append_objects \
          (
            "aia{sn}(is)ay",
            [[1, 2], {"k" : 3}, (4, "five"), b"xy"]
          )
        arr, dct, struct, octets = msg.all_objects
        self.assertIsInstance(arr, Array)
        self.assertEqual(arr, [1, 2])
        self.assertEqual(arr.signature, "i")
        self.assertEqual(arr.variant_level, 0)
        self.assertIsInstance(dct, Dictionary)
        self.assertEqual(dct, {"k" : 3})
        self.assertEqual(dct.signature, "sn")
        self.assertIsInstance(struct, Struct)
        self.assertEqual(struct, (4, "five"))
        self.assertEqual(struct.signature, "is")
        self.assertEqual(octets, [ord("x"), ord("y")])
        self.assertEqual(octets.signature, "y")
    #end test_containers_decoded

    def test_empty_containers(self) -> None :
        msg = new_call()
        msg.append_objects(None, [Array([], signature = "s"), Dictionary({}, signature = "sv")])
        self.assertEqual(msg.signature, "asa{sv}")
        arr, dct = msg.all_objects
        self.assertEqual(arr, [])
        self.assertEqual(arr.signature, "s")
        self.assertEqual(dct, {})
        self.assertEqual(dct.signature, "sv")
    #end test_empty_containers

    def test_variant_levels(self) -> None :
        msg = new_call()
        msg.append_objects \
          (
            None,
            [
                Dictionary
                  (
                    {
                        "one" : Array([1], signature = "i", variant_level = 1),
                        "two" : Struct((2, "x"), signature = "is", variant_level = 2),
                    },
                    signature = "sv"
                  ),
                Array(["y"], signature = "s", variant_level = 1),
            ]
          )
        self.assertEqual(msg.signature, "a{sv}v")
        props, top = msg.all_objects
        self.assertEqual(props["one"], [1])
        self.assertIsInstance(props["one"], Array)
        self.assertEqual(props["one"].variant_level, 1)
        self.assertEqual(props["one"].signature, "i")
        self.assertEqual(props["two"], (2, "x"))
        self.assertIsInstance(props["two"], Struct)
        self.assertEqual(props["two"].variant_level, 2)
        self.assertEqual(top, ["y"])
        self.assertEqual(top.variant_level, 1)
    #end test_variant_levels

    def test_plain_value_in_variant(self) -> None :
        msg = new_call()
        msg.append_objects("v", [42])
        self.assertEqual(msg.all_objects, [42])
    #end test_plain_value_in_variant

    def test_method_return(self) -> None :
        call = new_call()
        call.serial = 7
        self.assertEqual(call.serial, 7)
        reply = call.new_method_return()
        self.assertEqual(reply.type, DBUS.MESSAGE_TYPE_METHOD_RETURN)
        self.assertEqual(reply.reply_serial, 7)
        self.assertFalse(reply.is_error)
        reply.append_objects("s", ["done"])
        reply.raise_if_error()
        self.assertEqual(reply.all_objects, ["done"])
    #end test_method_return

    def test_error_reply(self) -> None :
        call = new_call()
        call.serial = 9
        err = call.new_error("org.example.Error.Bad", "it went wrong")
        self.assertEqual(err.type, DBUS.MESSAGE_TYPE_ERROR)
        self.assertTrue(err.is_error)
        self.assertEqual(err.error_name, "org.example.Error.Bad")
        self.assertEqual(err.reply_serial, 9)
        with self.assertRaises(DBusError) as cm :
            err.raise_if_error()
        #end with
        self.assertEqual(cm.exception.name, "org.example.Error.Bad")
        self.assertEqual(cm.exception.message, "it went wrong")
    #end test_error_reply

    def test_signal(self) -> None :
        sig = Message.new_signal("/org/example/Thing", "org.example.Iface", "Changed")
        self.assertEqual(sig.type, DBUS.MESSAGE_TYPE_SIGNAL)
        self.assertEqual(sig.path, "/org/example/Thing")
        self.assertEqual(sig.interface, "org.example.Iface")
        self.assertEqual(sig.member, "Changed")
        self.assertIsNone(sig.destination)
    #end test_signal

    def test_failed_append_abandons_container(self) -> None :
        with self.assertRaises(TypeError) :
            new_call().append_objects("ai", [[1, "two"]])
        #end with
        with self.assertRaises(ValueError) :
            new_call().append_objects("a{sv}", [{"k" : Struct((1, 2, 300), signature = "yyy", variant_level = 1)}])
        #end with
        with self.assertRaises(TypeError) :
            new_call().append_objects("(is)", [(1, 2)])
        #end with
    #end test_failed_append_abandons_container

    def test_same_wrapper(self) -> None :
        msg = new_call()
        objects = list(msg.objects)
        self.assertEqual(objects, [])
        self.assertIs(Message._instances[msg._dbobj], msg)
    #end test_same_wrapper

#end TestMessage

def get_id_call() :
    return \
        Message.new_method_call("org.freedesktop.DBus", "/org/freedesktop/DBus", "org.freedesktop.DBus", "GetId")
#end get_id_call

@skipIf(not HAVE_LIBDBUS, "libdbus not available")
@skipIf("DBUS_SESSION_BUS_ADDRESS" not in os.environ, "no session bus (try dbus-run-session)")
class TestPendingCallOnBus(TestCase) :

    def setUp(self) -> None :
        try :
            self.conn = Connection.bus_get(DBUS.BUS_SESSION, False)
        except DBusError as err :
            self.skipTest("session bus not reachable: %s" % err)
        #end try
        if self.conn == None :
            self.skipTest("session bus not reachable")
        #end if
    #end setUp

    def dispatch_until(self, done, rounds = 50) :
        for i in range(rounds) :
            if done() :
                break
            self.conn.read_write_dispatch(0.1)
        #end for
    #end dispatch_until

    def test_reply_delivered_once(self) -> None :
        calls = []
        pending = self.conn.send_with_reply(get_id_call(), calls.append, 5)
        self.assertIsInstance(pending, PendingCall)
        pending.block()
        self.assertTrue(pending.completed)
        self.dispatch_until(lambda : False, rounds = 3)
        self.assertEqual(len(calls), 1)
        reply = calls[0]
        self.assertIsInstance(reply, Message)
        self.assertEqual(reply.type, DBUS.MESSAGE_TYPE_METHOD_RETURN)
        bus_id, = reply.all_objects
        self.assertIsInstance(bus_id, str)
    #end test_reply_delivered_once

    def test_reply_by_dispatch(self) -> None :
        calls = []
        pending = self.conn.send_with_reply(get_id_call(), calls.append, 5)
        self.dispatch_until(lambda : len(calls) != 0)
        self.assertEqual(len(calls), 1)
        self.assertTrue(pending.completed)
    #end test_reply_by_dispatch

    def test_cancel_before_dispatch(self) -> None :
        calls = []
        pending = self.conn.send_with_reply(get_id_call(), calls.append, 5)
        pending.cancel()
        self.conn.flush()
        self.dispatch_until(lambda : False, rounds = 5)
        self.assertEqual(calls, [])
        pending.cancel()
    #end test_cancel_before_dispatch

    def test_drop_inside_handler(self) -> None :
        calls = []
        holder = {}

        def handler(message) :
            calls.append(message)
            del holder["pending"]
        #end handler

        holder["pending"] = self.conn.send_with_reply(get_id_call(), handler, 5)
        self.dispatch_until(lambda : len(calls) != 0)
        self.dispatch_until(lambda : False, rounds = 3)
        self.assertEqual(len(calls), 1)
        self.assertEqual(holder, {})
    #end test_drop_inside_handler

#end TestPendingCallOnBus

if __name__ == "__main__" :
    main()
#end if
