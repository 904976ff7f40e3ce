"""
Typed D-Bus container values and a completion bridge for pending calls,
built around libdbus <https://dbus.freedesktop.org/doc/api/html/index.html>.

Array, Dictionary and Struct are ordinary list, dict and tuple values that
additionally carry a D-Bus type signature and a variant nesting level, so
they can be marshalled onto the wire unambiguously. PendingCall wraps an
in-flight method call and hands its reply back to Python exactly once,
from whatever thread libdbus happens to deliver it on.

libdbus itself is only loaded on first use. Containers without a signature
can be used without it; anything that validates or walks a signature needs it.
"""
#+
# Copyright 2017 Lawrence D'Oliveiro <ldo@geek-central.gen.nz>.
# Licensed under the GNU Lesser General Public License v2.1 or later.
#-

import os
import ctypes as ct
import threading
import warnings
import logging
from weakref import \
    WeakValueDictionary
import atexit

logger = logging.getLogger(__name__)

class DBUS :
    "useful definitions adapted from the D-Bus includes. You will need to use the" \
    " constants, but apart from that, see the more Pythonic wrappers defined outside" \
    " this class in preference to accessing low-level structures directly."

    # General ctypes gotcha: when passing addresses of ctypes-constructed objects
    # to routine calls, do not construct the objects directly in the call. Otherwise
    # the refcount goes to 0 before the routine is actually entered, and the object
    # can get prematurely disposed. Always store the object reference into a local
    # variable, and pass the value of the variable instead.

    # from dbus-types.h:

    bool_t = ct.c_uint

    # from dbus-protocol.h:

    # Type code that is never equal to a legitimate type code
    TYPE_INVALID = 0

    # Primitive types
    TYPE_BYTE = ord('y') # 8-bit unsigned integer
    TYPE_BOOLEAN = ord('b') # boolean
    TYPE_INT16 = ord('n') # 16-bit signed integer
    TYPE_UINT16 = ord('q') # 16-bit unsigned integer
    TYPE_INT32 = ord('i') # 32-bit signed integer
    TYPE_UINT32 = ord('u') # 32-bit unsigned integer
    TYPE_INT64 = ord('x') # 64-bit signed integer
    TYPE_UINT64 = ord('t') # 64-bit unsigned integer
    TYPE_DOUBLE = ord('d') # 8-byte double in IEEE 754 format
    TYPE_STRING = ord('s') # UTF-8 encoded, nul-terminated Unicode string
    TYPE_OBJECT_PATH = ord('o') # D-Bus object path
    TYPE_SIGNATURE = ord('g') # D-Bus type signature
    TYPE_UNIX_FD = ord('h') # unix file descriptor

    basic_to_ctypes = \
        { # ctypes objects suitable for holding values of D-Bus types
            TYPE_BYTE : ct.c_ubyte,
            TYPE_BOOLEAN : bool_t,
            TYPE_INT16 : ct.c_int16,
            TYPE_UINT16 : ct.c_uint16,
            TYPE_INT32 : ct.c_int32,
            TYPE_UINT32 : ct.c_uint32,
            TYPE_INT64 : ct.c_int64,
            TYPE_UINT64 : ct.c_uint64,
            TYPE_DOUBLE : ct.c_double,
            TYPE_STRING : ct.c_char_p,
            TYPE_OBJECT_PATH : ct.c_char_p,
            TYPE_SIGNATURE : ct.c_char_p,
            TYPE_UNIX_FD : ct.c_int,
        }

    def int_subtype(i, bits, signed) :
        "returns integer i after checking that it fits in the given number of bits."
        if not isinstance(i, int) :
            raise TypeError("integer expected, not %s" % type(i).__name__)
        #end if
        if signed :
            lo = - 1 << bits - 1
            hi = (1 << bits - 1) - 1
        else :
            lo = 0
            hi = (1 << bits) - 1
        #end if
        if i < lo or i > hi :
            raise ValueError \
              (
                "%d not in range of %s %d-bit value" % (i, ("unsigned", "signed")[signed], bits)
              )
        #end if
        return \
            i
    #end int_subtype

    subtype_byte = lambda i : DBUS.int_subtype(i, 8, False)
    subtype_int16 = lambda i : DBUS.int_subtype(i, 16, True)
    subtype_uint16 = lambda i : DBUS.int_subtype(i, 16, False)
    subtype_int32 = lambda i : DBUS.int_subtype(i, 32, True)
    subtype_uint32 = lambda i : DBUS.int_subtype(i, 32, False)
    subtype_int64 = lambda i : DBUS.int_subtype(i, 64, True)
    subtype_uint64 = lambda i : DBUS.int_subtype(i, 64, False)

    int_convert = \
        { # range checks for the various D-Bus integer types
            TYPE_BYTE : subtype_byte,
            TYPE_INT16 : subtype_int16,
            TYPE_UINT16 : subtype_uint16,
            TYPE_INT32 : subtype_int32,
            TYPE_UINT32 : subtype_uint32,
            TYPE_INT64 : subtype_int64,
            TYPE_UINT64 : subtype_uint64,
            TYPE_UNIX_FD : subtype_int32,
        }

    # Compound types
    TYPE_ARRAY = ord('a') # D-Bus array type
    TYPE_VARIANT = ord('v') # D-Bus variant type

    TYPE_STRUCT = ord('r') # a struct; however, type signatures use "(" and ")"
    TYPE_DICT_ENTRY = ord('e') # a dict entry; however, type signatures use "{" and "}"

    # Types of message

    MESSAGE_TYPE_METHOD_CALL = 1
    MESSAGE_TYPE_METHOD_RETURN = 2
    MESSAGE_TYPE_ERROR = 3
    MESSAGE_TYPE_SIGNAL = 4

    # Errors
    ERROR_FAILED = "org.freedesktop.DBus.Error.Failed" # generic error
    ERROR_NO_MEMORY = "org.freedesktop.DBus.Error.NoMemory"
    ERROR_INVALID_SIGNATURE = "org.freedesktop.DBus.Error.InvalidSignature"

    # from dbus-shared.h:

    # well-known bus types
    BUS_SESSION = 0
    BUS_SYSTEM = 1

    # from dbus-memory.h:

    FreeFunction = ct.CFUNCTYPE(None, ct.c_void_p)

    # from dbus-errors.h:

    class Error(ct.Structure) :
        _fields_ = \
            [
                ("name", ct.c_char_p),
                ("message", ct.c_char_p),
                ("padding", 2 * ct.c_void_p),
            ]
    #end Error
    ErrorPtr = ct.POINTER(Error)

    # from dbus-connection.h:

    PendingCallNotifyFunction = ct.CFUNCTYPE(None, ct.c_void_p, ct.c_void_p)

    # from dbus-pending-call.h:
    TIMEOUT_INFINITE = 0x7fffffff
    TIMEOUT_USE_DEFAULT = -1

    # from dbus-message.h:
    class MessageIter(ct.Structure) :
        "contains no public fields."
        _fields_ = \
            [
                ("dummy1", ct.c_void_p),
                ("dummy2", ct.c_void_p),
                ("dummy3", ct.c_uint),
                ("dummy4", ct.c_int),
                ("dummy5", ct.c_int),
                ("dummy6", ct.c_int),
                ("dummy7", ct.c_int),
                ("dummy8", ct.c_int),
                ("dummy9", ct.c_int),
                ("dummy10", ct.c_int),
                ("dummy11", ct.c_int),
                ("pad1", ct.c_int),
                ("pad2", ct.c_void_p),
                ("pad3", ct.c_void_p),
            ]
    #end MessageIter
    MessageIterPtr = ct.POINTER(MessageIter)

    # from dbus-signature.h:
    class SignatureIter(ct.Structure) :
        "contains no public fields."
        _fields_ = \
            [
                ("dummy1", ct.c_void_p),
                ("dummy2", ct.c_void_p),
                ("dummy8", ct.c_uint),
                ("dummy12", ct.c_int),
                ("dummy17", ct.c_int),
            ]
    #end SignatureIter
    SignatureIterPtr = ct.POINTER(SignatureIter)

#end DBUS

#+
# Exceptions
#-

class DBusError(Exception) :
    "for raising an exception that reports a D-Bus error name and accompanying message."

    def __init__(self, name, message) :
        self.name = name
        self.message = message
        self.args = ("%s -- %s" % (name, message),)
    #end __init__

#end DBusError

class DBusFailure(DBusError) :
    "used internally for reporting general libdbus call failures."

    def __init__(self, message) :
        super().__init__(DBUS.ERROR_FAILED, message)
    #end __init__

#end DBusFailure

class DBusNoMemory(DBusError, MemoryError) :
    "libdbus could not allocate something it needed."

    def __init__(self, message) :
        super().__init__(DBUS.ERROR_NO_MEMORY, message)
    #end __init__

#end DBusNoMemory

class DBusInvalidSignature(DBusError, ValueError) :
    "a type-signature string is not well-formed."

    def __init__(self, message) :
        super().__init__(DBUS.ERROR_INVALID_SIGNATURE, message)
    #end __init__

#end DBusInvalidSignature

#+
# Library loading
#-

LIBDBUS_ENV = "DBUSGLUE_LIBDBUS"
LIBDBUS_DEFAULT = "libdbus-1.so.3"

def _declare_prototypes(dbus) :
    # from dbus-connection.h:
    dbus.dbus_connection_unref.restype = None
    dbus.dbus_connection_unref.argtypes = (ct.c_void_p,)
    dbus.dbus_connection_close.restype = None
    dbus.dbus_connection_close.argtypes = (ct.c_void_p,)
    dbus.dbus_connection_get_is_connected.restype = DBUS.bool_t
    dbus.dbus_connection_get_is_connected.argtypes = (ct.c_void_p,)
    dbus.dbus_connection_send.restype = DBUS.bool_t
    dbus.dbus_connection_send.argtypes = (ct.c_void_p, ct.c_void_p, ct.POINTER(ct.c_uint))
    dbus.dbus_connection_send_with_reply.restype = DBUS.bool_t
    dbus.dbus_connection_send_with_reply.argtypes = (ct.c_void_p, ct.c_void_p, ct.c_void_p, ct.c_int)
    dbus.dbus_connection_send_with_reply_and_block.restype = ct.c_void_p
    dbus.dbus_connection_send_with_reply_and_block.argtypes = (ct.c_void_p, ct.c_void_p, ct.c_int, DBUS.ErrorPtr)
    dbus.dbus_connection_flush.restype = None
    dbus.dbus_connection_flush.argtypes = (ct.c_void_p,)
    dbus.dbus_connection_read_write_dispatch.restype = DBUS.bool_t
    dbus.dbus_connection_read_write_dispatch.argtypes = (ct.c_void_p, ct.c_int)

    # from dbus-bus.h:
    dbus.dbus_bus_get.restype = ct.c_void_p
    dbus.dbus_bus_get.argtypes = (ct.c_uint, DBUS.ErrorPtr)
    dbus.dbus_bus_get_private.restype = ct.c_void_p
    dbus.dbus_bus_get_private.argtypes = (ct.c_uint, DBUS.ErrorPtr)

    # from dbus-errors.h:
    dbus.dbus_error_init.restype = None
    dbus.dbus_error_init.argtypes = (DBUS.ErrorPtr,)
    dbus.dbus_error_free.restype = None
    dbus.dbus_error_free.argtypes = (DBUS.ErrorPtr,)
    dbus.dbus_error_is_set.restype = DBUS.bool_t
    dbus.dbus_error_is_set.argtypes = (DBUS.ErrorPtr,)

    # from dbus-pending-call.h:
    dbus.dbus_pending_call_unref.restype = None
    dbus.dbus_pending_call_unref.argtypes = (ct.c_void_p,)
    dbus.dbus_pending_call_set_notify.restype = DBUS.bool_t
    dbus.dbus_pending_call_set_notify.argtypes = (ct.c_void_p, ct.c_void_p, ct.c_void_p, ct.c_void_p)
    dbus.dbus_pending_call_cancel.restype = None
    dbus.dbus_pending_call_cancel.argtypes = (ct.c_void_p,)
    dbus.dbus_pending_call_get_completed.restype = DBUS.bool_t
    dbus.dbus_pending_call_get_completed.argtypes = (ct.c_void_p,)
    dbus.dbus_pending_call_steal_reply.restype = ct.c_void_p
    dbus.dbus_pending_call_steal_reply.argtypes = (ct.c_void_p,)
    dbus.dbus_pending_call_block.restype = None
    dbus.dbus_pending_call_block.argtypes = (ct.c_void_p,)

    # from dbus-message.h:
    dbus.dbus_message_new_method_call.restype = ct.c_void_p
    dbus.dbus_message_new_method_call.argtypes = (ct.c_char_p, ct.c_char_p, ct.c_char_p, ct.c_char_p)
    dbus.dbus_message_new_method_return.restype = ct.c_void_p
    dbus.dbus_message_new_method_return.argtypes = (ct.c_void_p,)
    dbus.dbus_message_new_signal.restype = ct.c_void_p
    dbus.dbus_message_new_signal.argtypes = (ct.c_char_p, ct.c_char_p, ct.c_char_p)
    dbus.dbus_message_new_error.restype = ct.c_void_p
    dbus.dbus_message_new_error.argtypes = (ct.c_void_p, ct.c_char_p, ct.c_char_p)
    dbus.dbus_message_unref.restype = None
    dbus.dbus_message_unref.argtypes = (ct.c_void_p,)
    dbus.dbus_message_get_type.restype = ct.c_int
    dbus.dbus_message_get_type.argtypes = (ct.c_void_p,)
    dbus.dbus_message_get_path.restype = ct.c_char_p
    dbus.dbus_message_get_path.argtypes = (ct.c_void_p,)
    dbus.dbus_message_get_interface.restype = ct.c_char_p
    dbus.dbus_message_get_interface.argtypes = (ct.c_void_p,)
    dbus.dbus_message_get_member.restype = ct.c_char_p
    dbus.dbus_message_get_member.argtypes = (ct.c_void_p,)
    dbus.dbus_message_get_error_name.restype = ct.c_char_p
    dbus.dbus_message_get_error_name.argtypes = (ct.c_void_p,)
    dbus.dbus_message_get_destination.restype = ct.c_char_p
    dbus.dbus_message_get_destination.argtypes = (ct.c_void_p,)
    dbus.dbus_message_get_sender.restype = ct.c_char_p
    dbus.dbus_message_get_sender.argtypes = (ct.c_void_p,)
    dbus.dbus_message_get_signature.restype = ct.c_char_p
    dbus.dbus_message_get_signature.argtypes = (ct.c_void_p,)
    dbus.dbus_message_set_no_reply.restype = None
    dbus.dbus_message_set_no_reply.argtypes = (ct.c_void_p, DBUS.bool_t)
    dbus.dbus_message_get_no_reply.restype = DBUS.bool_t
    dbus.dbus_message_get_no_reply.argtypes = (ct.c_void_p,)
    dbus.dbus_message_get_serial.restype = ct.c_uint
    dbus.dbus_message_get_serial.argtypes = (ct.c_void_p,)
    dbus.dbus_message_set_serial.restype = None
    dbus.dbus_message_set_serial.argtypes = (ct.c_void_p, ct.c_uint)
    dbus.dbus_message_get_reply_serial.restype = ct.c_uint
    dbus.dbus_message_get_reply_serial.argtypes = (ct.c_void_p,)
    dbus.dbus_message_iter_init.restype = DBUS.bool_t
    dbus.dbus_message_iter_init.argtypes = (ct.c_void_p, DBUS.MessageIterPtr)
    dbus.dbus_message_iter_next.restype = DBUS.bool_t
    dbus.dbus_message_iter_next.argtypes = (DBUS.MessageIterPtr,)
    dbus.dbus_message_iter_get_signature.restype = ct.c_void_p
    dbus.dbus_message_iter_get_signature.argtypes = (DBUS.MessageIterPtr,)
    dbus.dbus_message_iter_get_arg_type.restype = ct.c_int
    dbus.dbus_message_iter_get_arg_type.argtypes = (DBUS.MessageIterPtr,)
    dbus.dbus_message_iter_get_element_type.restype = ct.c_int
    dbus.dbus_message_iter_get_element_type.argtypes = (DBUS.MessageIterPtr,)
    dbus.dbus_message_iter_recurse.restype = None
    dbus.dbus_message_iter_recurse.argtypes = (DBUS.MessageIterPtr, DBUS.MessageIterPtr)
    dbus.dbus_message_iter_get_basic.restype = None
    dbus.dbus_message_iter_get_basic.argtypes = (DBUS.MessageIterPtr, ct.c_void_p)
    dbus.dbus_message_iter_init_append.restype = None
    dbus.dbus_message_iter_init_append.argtypes = (ct.c_void_p, DBUS.MessageIterPtr)
    dbus.dbus_message_iter_append_basic.restype = DBUS.bool_t
    dbus.dbus_message_iter_append_basic.argtypes = (DBUS.MessageIterPtr, ct.c_int, ct.c_void_p)
    dbus.dbus_message_iter_open_container.restype = DBUS.bool_t
    dbus.dbus_message_iter_open_container.argtypes = (DBUS.MessageIterPtr, ct.c_int, ct.c_char_p, DBUS.MessageIterPtr)
    dbus.dbus_message_iter_close_container.restype = DBUS.bool_t
    dbus.dbus_message_iter_close_container.argtypes = (DBUS.MessageIterPtr, DBUS.MessageIterPtr)
    dbus.dbus_message_iter_abandon_container.restype = None
    dbus.dbus_message_iter_abandon_container.argtypes = (DBUS.MessageIterPtr, DBUS.MessageIterPtr)

    # from dbus-signature.h:
    dbus.dbus_signature_iter_init.restype = None
    dbus.dbus_signature_iter_init.argtypes = (DBUS.SignatureIterPtr, ct.c_char_p)
    dbus.dbus_signature_iter_get_current_type.restype = ct.c_int
    dbus.dbus_signature_iter_get_current_type.argtypes = (DBUS.SignatureIterPtr,)
    dbus.dbus_signature_iter_get_signature.restype = ct.c_void_p
    dbus.dbus_signature_iter_get_signature.argtypes = (DBUS.SignatureIterPtr,)
    dbus.dbus_signature_iter_get_element_type.restype = ct.c_int
    dbus.dbus_signature_iter_get_element_type.argtypes = (DBUS.SignatureIterPtr,)
    dbus.dbus_signature_iter_next.restype = DBUS.bool_t
    dbus.dbus_signature_iter_next.argtypes = (DBUS.SignatureIterPtr,)
    dbus.dbus_signature_iter_recurse.restype = None
    dbus.dbus_signature_iter_recurse.argtypes = (DBUS.SignatureIterPtr, DBUS.SignatureIterPtr)
    dbus.dbus_signature_validate.restype = DBUS.bool_t
    dbus.dbus_signature_validate.argtypes = (ct.c_char_p, DBUS.ErrorPtr)
    dbus.dbus_signature_validate_single.restype = DBUS.bool_t
    dbus.dbus_signature_validate_single.argtypes = (ct.c_char_p, DBUS.ErrorPtr)

    # from dbus-memory.h:
    dbus.dbus_free.restype = None
    dbus.dbus_free.argtypes = (ct.c_void_p,)
#end _declare_prototypes

class _LibDBus :
    # stands in for the libdbus shared library, which is not actually
    # loaded until the first routine is looked up. The library name can
    # be overridden with the DBUSGLUE_LIBDBUS environment variable.

    __slots__ = ("_lib", "_lock")

    def __init__(self) :
        self._lib = None
        self._lock = threading.Lock()
    #end __init__

    def __getattr__(self, name) :
        if self._lib == None :
            with self._lock :
                if self._lib == None :
                    libname = os.environ.get(LIBDBUS_ENV, LIBDBUS_DEFAULT)
                    try :
                        lib = ct.cdll.LoadLibrary(libname)
                    except OSError as fail :
                        raise DBusFailure("cannot load %s: %s" % (libname, fail))
                    #end try
                    _declare_prototypes(lib)
                    logger.debug("loaded %s", libname)
                    self._lib = lib
                #end if
            #end with
        #end if
        return \
            getattr(self._lib, name)
    #end __getattr__

#end _LibDBus

dbus = _LibDBus()

#+
# Signatures
#-

class Signature(str) :
    "a type-signature string, made up of zero or more complete D-Bus types." \
    " Constructing one validates it with libdbus, raising DBusInvalidSignature" \
    " if it is not well-formed; passing an existing Signature returns it unchanged."

    __slots__ = ()

    def __new__(celf, value = "") :
        if isinstance(value, Signature) :
            return \
                value
        #end if
        if isinstance(value, (bytes, bytearray)) :
            value = value.decode("ascii")
        #end if
        if not isinstance(value, str) :
            raise TypeError("signature must be a str, not %s" % type(value).__name__)
        #end if
        if "\0" in value :
            raise DBusInvalidSignature("%r: signature contains a nul character" % value)
        #end if
        error = Error()
        if not dbus.dbus_signature_validate(value.encode(), error._dbobj) :
            if error.is_set :
                reason = error.message
            else :
                reason = "not a valid signature"
            #end if
            raise DBusInvalidSignature("%r: %s" % (value, reason))
        #end if
        return \
            super().__new__(celf, value)
    #end __new__

    @classmethod
    def _trusted(celf, value) :
        # for pieces of signatures that have already been validated.
        return \
            str.__new__(celf, value)
    #end _trusted

    def __repr__(self) :
        return \
            "%s(%s)" % (self.__class__.__name__, super().__repr__())
    #end __repr__

    def types(self) :
        "iterates over the complete types making up this Signature."
        for elt in SignatureIter.init(self) :
            yield Signature._trusted(elt.signature)
        #end for
    #end types

#end Signature

def signature_validate(signature, error = None) :
    "is signature a valid sequence of zero or more complete types. If error is" \
    " given, it is filled in with the reason when the answer is no."
    if error == None :
        error = Error()
    #end if
    return \
        dbus.dbus_signature_validate(signature.encode(), error._dbobj) != 0
#end signature_validate

def signature_validate_single(signature, error = None) :
    "is signature a single valid type. If error is given, it is filled in with" \
    " the reason when the answer is no."
    if error == None :
        error = Error()
    #end if
    return \
        dbus.dbus_signature_validate_single(signature.encode(), error._dbobj) != 0
#end signature_validate_single

class SignatureIter :
    "wraps a DBusSignatureIter object. Do not instantiate directly; use the init" \
    " and recurse methods.\n" \
    "\n" \
    "Can be used as a Python iterator; each step yields the SignatureIter itself," \
    " positioned on the next complete type."
    # <https://dbus.freedesktop.org/doc/api/html/group__DBusSignature.html>

    __slots__ = ("_dbobj", "_signature", "_startiter") # to forestall typos

    @classmethod
    def init(celf, signature) :
        self = celf()
        self._signature = ct.c_char_p(Signature(signature).encode()) # need to ensure storage stays valid
        dbus.dbus_signature_iter_init(self._dbobj, self._signature)
        return \
            self
    #end init

    def __init__(self) :
        self._dbobj = DBUS.SignatureIter()
        self._signature = None # caller will set as necessary
        self._startiter = True
    #end __init__

    def __iter__(self) :
        return \
            self
    #end __iter__

    def __next__(self) :
        if self._startiter :
            self._startiter = False
            if self.current_type == DBUS.TYPE_INVALID :
                raise StopIteration("empty signature")
            #end if
        else :
            self.next()
        #end if
        return \
            self
    #end __next__

    def next(self) :
        if dbus.dbus_signature_iter_next(self._dbobj) == 0 :
            raise StopIteration("end of signature iterator")
        #end if
        self._startiter = False
        return \
            self
    #end next

    def recurse(self) :
        "returns a new SignatureIter over the contents of the current container type."
        if self.current_type not in (DBUS.TYPE_ARRAY, DBUS.TYPE_STRUCT, DBUS.TYPE_DICT_ENTRY) :
            raise TypeError("%r is not a container type" % self.signature)
        #end if
        subiter = type(self)()
        subiter._signature = self._signature # points into the same storage
        dbus.dbus_signature_iter_recurse(self._dbobj, subiter._dbobj)
        return \
            subiter
    #end recurse

    @property
    def current_type(self) :
        return \
            dbus.dbus_signature_iter_get_current_type(self._dbobj)
    #end current_type

    @property
    def signature(self) :
        "the complete type at the current position."
        if self.current_type == DBUS.TYPE_INVALID :
            result = ""
        else :
            c_result = dbus.dbus_signature_iter_get_signature(self._dbobj)
            if c_result == None :
                raise DBusNoMemory("dbus_signature_iter_get_signature failure")
            #end if
            result = ct.cast(c_result, ct.c_char_p).value.decode()
            dbus.dbus_free(c_result)
        #end if
        return \
            result
    #end signature

    @property
    def element_type(self) :
        "the type code of the elements, if the current type is an array."
        if self.current_type == DBUS.TYPE_ARRAY :
            result = dbus.dbus_signature_iter_get_element_type(self._dbobj)
        else :
            result = DBUS.TYPE_INVALID
        #end if
        return \
            result
    #end element_type

#end SignatureIter

#+
# Basic value types
#-

class ObjectPath(str) :
    "an object path string."

    def __repr__(self) :
        return \
            "%s(%s)" % (self.__class__.__name__, super().__repr__())
    #end __repr__

#end ObjectPath

class UnixFD(int) :
    "a file-descriptor integer."

    def __repr__(self) :
        return \
            "%s(%s)" % (self.__class__.__name__, super().__repr__())
    #end __repr__

#end UnixFD

_basic_subclasses = \
    {
        DBUS.TYPE_OBJECT_PATH : ObjectPath,
        DBUS.TYPE_SIGNATURE : Signature,
        DBUS.TYPE_UNIX_FD : UnixFD,
        DBUS.TYPE_BOOLEAN : bool,
    }

#+
# Container types
#-

def _variant_level_from(kwargs) :
    # variant_level may only be given by keyword.
    variant_level = kwargs.get("variant_level", 0)
    if not isinstance(variant_level, int) :
        raise TypeError("variant_level must be an int, not %s" % type(variant_level).__name__)
    #end if
    if variant_level < 0 :
        raise ValueError("variant_level must not be negative")
    #end if
    return \
        variant_level
#end _variant_level_from

def _to_signature(signature) :
    # None or an actual Signature are kept as they are.
    if signature != None and not isinstance(signature, Signature) :
        signature = Signature(signature)
    #end if
    return \
        signature
#end _to_signature

def _container_repr(self, parent_repr) :
    if self.variant_level > 0 :
        result = "%s(%s, signature=%r, variant_level=%d)" % \
            (type(self).__name__, parent_repr, self.signature, self.variant_level)
    else :
        result = "%s(%s, signature=%r)" % (type(self).__name__, parent_repr, self.signature)
    #end if
    return \
        result
#end _container_repr

class Array(list) :
    "Array([iterable][, signature][, variant_level])\n" \
    "\n" \
    "An array of similar items, implemented as a subtype of list.\n" \
    "\n" \
    "An Array behaves just like a list, but with the addition of a signature" \
    " property set by the constructor; conversion of its items to D-Bus types is" \
    " only done when it is appended to a Message.\n" \
    "\n" \
    "The signature is that of each element, and may be None, in which case when" \
    " the Array is sent over D-Bus the element signature is guessed from the first" \
    " element. variant_level is the number of variants wrapping the Array, and can" \
    " only be given by keyword."

    __slots__ = ("_signature", "_variant_level")

    def __new__(celf, *args, **kwargs) :
        # variant_level is immutable, so handle it here rather than in __init__
        variant_level = _variant_level_from(kwargs)
        self = super().__new__(celf)
        self._signature = None
        self._variant_level = variant_level
        return \
            self
    #end __new__

    def __init__(self, iterable = (), signature = None, variant_level = 0) :
        # variant_level is accepted but ignored -- __new__ took care of it
        signature = _to_signature(signature)
        super().__init__(iterable)
        self._signature = signature
    #end __init__

    @property
    def signature(self) :
        "the D-Bus signature of each element of this Array (a Signature, or None)."
        return \
            self._signature
    #end signature

    @property
    def variant_level(self) :
        "the number of nested variants wrapping the real data. 0 if not in a variant."
        return \
            self._variant_level
    #end variant_level

    def __repr__(self) :
        return \
            _container_repr(self, super().__repr__())
    #end __repr__

#end Array

class Dictionary(dict) :
    "Dictionary([mapping_or_iterable][, signature][, variant_level])\n" \
    "\n" \
    "A mapping whose keys are similar and whose values are similar, implemented" \
    " as a subtype of dict.\n" \
    "\n" \
    "The signature is that of each key followed by that of each value, and may be" \
    " None, in which case when the Dictionary is sent over D-Bus the key and value" \
    " signatures are guessed from an arbitrary entry."

    __slots__ = ("_signature", "_variant_level")

    def __new__(celf, *args, **kwargs) :
        # variant_level is immutable, so handle it here rather than in __init__
        variant_level = _variant_level_from(kwargs)
        self = super().__new__(celf)
        self._signature = None
        self._variant_level = variant_level
        return \
            self
    #end __new__

    def __init__(self, mapping_or_iterable = (), signature = None, variant_level = 0) :
        signature = _to_signature(signature)
        super().__init__(mapping_or_iterable)
        self._signature = signature
    #end __init__

    @property
    def signature(self) :
        "the D-Bus signature of each key in this Dictionary, followed by that of" \
        " each value (a Signature, or None)."
        return \
            self._signature
    #end signature

    @property
    def variant_level(self) :
        "the number of nested variants wrapping the real data. 0 if not in a variant."
        return \
            self._variant_level
    #end variant_level

    def __repr__(self) :
        return \
            _container_repr(self, super().__repr__())
    #end __repr__

#end Dictionary

class Struct(tuple) :
    "Struct(iterable[, signature][, variant_level])\n" \
    "\n" \
    "A structure containing distinct items, implemented as a subtype of tuple.\n" \
    "\n" \
    "The signature is that of the fields, without the enclosing parentheses; it" \
    " may be omitted or None, in which case it is guessed from the types of the" \
    " items when sent. Neither the items nor the attributes of a Struct can be" \
    " changed once it is constructed."

    def __new__(celf, *args, **kwargs) :
        if len(args) != 1 :
            raise TypeError("%s() takes exactly one positional argument" % celf.__name__)
        #end if
        unknown = set(kwargs) - {"signature", "variant_level"}
        if len(unknown) != 0 :
            raise TypeError \
              (
                "%s() got unexpected keyword argument(s) %s" % (celf.__name__, ", ".join(sorted(unknown)))
              )
        #end if
        variant_level = _variant_level_from(kwargs)
        signature = _to_signature(kwargs.get("signature"))
        self = super().__new__(celf, args[0])
        object.__setattr__(self, "variant_level", variant_level)
        object.__setattr__(self, "signature", signature)
        return \
            self
    #end __new__

    def __setattr__(self, name, value) :
        raise AttributeError("%s object is immutable" % type(self).__name__)
    #end __setattr__

    def __delattr__(self, name) :
        raise AttributeError("%s object is immutable" % type(self).__name__)
    #end __delattr__

    def __repr__(self) :
        return \
            _container_repr(self, super().__repr__())
    #end __repr__

#end Struct

_container_types = (Array, Dictionary, Struct)

def _variant_level_of(obj) :
    if isinstance(obj, _container_types) :
        result = obj.variant_level
    else :
        result = 0
    #end if
    return \
        result
#end _variant_level_of

def _guess_unwrapped(obj) :
    # signature for obj, ignoring any variant levels it might have.
    if isinstance(obj, bool) :
        result = "b"
    elif isinstance(obj, UnixFD) :
        result = "h"
    elif isinstance(obj, int) :
        result = "i"
    elif isinstance(obj, float) :
        result = "d"
    elif isinstance(obj, ObjectPath) :
        result = "o"
    elif isinstance(obj, Signature) :
        result = "g"
    elif isinstance(obj, str) :
        result = "s"
    elif isinstance(obj, (bytes, bytearray)) :
        result = "ay"
    elif isinstance(obj, Struct) and obj.signature != None :
        result = "(%s)" % obj.signature
    elif isinstance(obj, tuple) :
        if len(obj) == 0 :
            raise ValueError("D-Bus structs cannot be empty")
        #end if
        result = "(%s)" % "".join(guess_signature(elt) for elt in obj)
    elif isinstance(obj, Array) and obj.signature != None :
        result = "a%s" % obj.signature
    elif isinstance(obj, list) :
        if len(obj) == 0 :
            raise ValueError("Unable to guess signature from an empty list")
        #end if
        result = "a%s" % guess_signature(obj[0])
    elif isinstance(obj, Dictionary) and obj.signature != None :
        result = "a{%s}" % obj.signature
    elif isinstance(obj, dict) :
        if len(obj) == 0 :
            raise ValueError("Unable to guess signature from an empty dict")
        #end if
        key, value = next(iter(obj.items()))
        result = "a{%s%s}" % (guess_signature(key), guess_signature(value))
    else :
        raise TypeError("Don't know which D-Bus type to use to encode type %r" % type(obj).__name__)
    #end if
    return \
        result
#end _guess_unwrapped

def guess_signature(obj) :
    "returns the Signature of the single complete type that obj will be" \
    " marshalled as, if no explicit signature is given. A container with a" \
    " nonzero variant_level is marshalled as a variant."
    if _variant_level_of(obj) > 0 :
        result = "v"
    else :
        result = _guess_unwrapped(obj)
    #end if
    return \
        Signature(result)
#end guess_signature

#+
# Messages
#-

class Error :
    "wrapper around a DBusError object. You can create one by calling the init method."
    # <https://dbus.freedesktop.org/doc/api/html/group__DBusErrors.html>

    __slots__ = ("_dbobj",) # to forestall typos

    def __init__(self) :
        self._dbobj = None
        dbobj = DBUS.Error()
        dbus.dbus_error_init(dbobj)
        self._dbobj = dbobj
    #end __init__

    def __del__(self) :
        if self._dbobj != None :
            dbus.dbus_error_free(self._dbobj)
            self._dbobj = None
        #end if
    #end __del__

    @classmethod
    def init(celf) :
        "for consistency with other classes that don’t want caller to instantiate directly."
        return \
            celf()
    #end init

    @property
    def is_set(self) :
        return \
            dbus.dbus_error_is_set(self._dbobj) != 0
    #end is_set

    @property
    def name(self) :
        return \
            self._dbobj.name.decode()
    #end name

    @property
    def message(self) :
        return \
            self._dbobj.message.decode()
    #end message

    def raise_if_set(self) :
        if self.is_set :
            raise DBusError(self.name, self.message)
        #end if
    #end raise_if_set

#end Error

def _get_timeout(timeout) :
    # timeouts are in seconds, apart from the special TIMEOUT_xxx values.
    if not isinstance(timeout, int) or timeout not in (DBUS.TIMEOUT_INFINITE, DBUS.TIMEOUT_USE_DEFAULT) :
        timeout = round(timeout * 1000)
    #end if
    return \
        timeout
#end _get_timeout

def _decode_or_none(c_result) :
    if c_result != None :
        c_result = c_result.decode()
    #end if
    return \
        c_result
#end _decode_or_none

def _encode_or_none(value) :
    if value != None :
        value = value.encode()
    #end if
    return \
        value
#end _encode_or_none

class Message :
    "wrapper around a DBusMessage object. Do not instantiate directly; use one of the" \
    " new_xxx methods, or consume to take over a DBusMessage reference from libdbus."
    # <https://dbus.freedesktop.org/doc/api/html/group__DBusMessage.html>

    __slots__ = ("__weakref__", "_dbobj") # to forestall typos

    _instances = WeakValueDictionary()

    def __new__(celf, _dbobj) :
        self = celf._instances.get(_dbobj)
        if self == None :
            self = super().__new__(celf)
            self._dbobj = _dbobj
            celf._instances[_dbobj] = self
        else :
            dbus.dbus_message_unref(self._dbobj)
              # lose extra reference created by caller
        #end if
        return \
            self
    #end __new__

    def __del__(self) :
        if self._dbobj != None :
            dbus.dbus_message_unref(self._dbobj)
            self._dbobj = None
        #end if
    #end __del__

    @classmethod
    def consume(celf, _dbobj) :
        "wraps a DBusMessage pointer, taking over the caller’s reference to it."
        return \
            celf(_dbobj)
    #end consume

    @classmethod
    def new_method_call(celf, destination, path, iface, method) :
        result = dbus.dbus_message_new_method_call \
          (
            _encode_or_none(destination),
            _encode_or_none(path),
            _encode_or_none(iface),
            _encode_or_none(method),
          )
        if result == None :
            raise DBusNoMemory("dbus_message_new_method_call failed")
        #end if
        return \
            celf(result)
    #end new_method_call

    def new_method_return(self) :
        result = dbus.dbus_message_new_method_return(self._dbobj)
        if result == None :
            raise DBusNoMemory("dbus_message_new_method_return failed")
        #end if
        return \
            type(self)(result)
    #end new_method_return

    def new_error(self, name, message) :
        result = dbus.dbus_message_new_error(self._dbobj, name.encode(), _encode_or_none(message))
        if result == None :
            raise DBusNoMemory("dbus_message_new_error failed")
        #end if
        return \
            type(self)(result)
    #end new_error

    @classmethod
    def new_signal(celf, path, iface, name) :
        result = dbus.dbus_message_new_signal(path.encode(), iface.encode(), name.encode())
        if result == None :
            raise DBusNoMemory("dbus_message_new_signal failed")
        #end if
        return \
            celf(result)
    #end new_signal

    @property
    def type(self) :
        "one of the MESSAGE_TYPE_xxx codes."
        return \
            dbus.dbus_message_get_type(self._dbobj)
    #end type

    @property
    def is_error(self) :
        return \
            self.type == DBUS.MESSAGE_TYPE_ERROR
    #end is_error

    @property
    def path(self) :
        result = _decode_or_none(dbus.dbus_message_get_path(self._dbobj))
        if result != None :
            result = ObjectPath(result)
        #end if
        return \
            result
    #end path

    @property
    def interface(self) :
        return \
            _decode_or_none(dbus.dbus_message_get_interface(self._dbobj))
    #end interface

    @property
    def member(self) :
        return \
            _decode_or_none(dbus.dbus_message_get_member(self._dbobj))
    #end member

    @property
    def error_name(self) :
        return \
            _decode_or_none(dbus.dbus_message_get_error_name(self._dbobj))
    #end error_name

    @property
    def destination(self) :
        return \
            _decode_or_none(dbus.dbus_message_get_destination(self._dbobj))
    #end destination

    @property
    def sender(self) :
        return \
            _decode_or_none(dbus.dbus_message_get_sender(self._dbobj))
    #end sender

    @property
    def signature(self) :
        return \
            Signature(dbus.dbus_message_get_signature(self._dbobj).decode())
    #end signature

    @property
    def serial(self) :
        return \
            dbus.dbus_message_get_serial(self._dbobj)
    #end serial

    @serial.setter
    def serial(self, serial) :
        dbus.dbus_message_set_serial(self._dbobj, serial)
    #end serial

    @property
    def reply_serial(self) :
        return \
            dbus.dbus_message_get_reply_serial(self._dbobj)
    #end reply_serial

    @property
    def no_reply(self) :
        return \
            dbus.dbus_message_get_no_reply(self._dbobj) != 0
    #end no_reply

    @no_reply.setter
    def no_reply(self, no_reply) :
        dbus.dbus_message_set_no_reply(self._dbobj, no_reply)
    #end no_reply

    class Iter :
        "for iterating over the arguments in a Message, whether for reading or appending." \
        " Do not instantiate directly; get from Message.iter_init, Message.Iter.recurse," \
        " Message.iter_init_append or Message.Iter.open_container.\n" \
        "\n" \
        "When reading, you can use this as a Python iterator, in a for-loop, passing" \
        " it to the next() built-in function etc."

        __slots__ = ("_dbobj", "_parent", "_nulliter", "_writing", "_startiter") # to forestall typos

        def __init__(self, _parent, _writing) :
            self._dbobj = DBUS.MessageIter()
            self._parent = _parent
            self._nulliter = False
            self._writing = _writing
            self._startiter = True
        #end __init__

        def __iter__(self) :
            assert not self._writing, "cannot read from write iterator"
            return \
                self
        #end __iter__

        def __next__(self) :
            assert not self._writing, "cannot read from write iterator"
            if self._nulliter :
                raise StopIteration("empty message iterator")
            #end if
            if self._startiter :
                self._startiter = False
                if self.arg_type == DBUS.TYPE_INVALID :
                    # recursed into an empty container
                    raise StopIteration("empty container")
                #end if
            elif not dbus.dbus_message_iter_next(self._dbobj) :
                raise StopIteration("end of message iterator")
            #end if
            return \
                self
        #end __next__

        @property
        def arg_type(self) :
            assert not self._writing, "cannot read from write iterator"
            return \
                dbus.dbus_message_iter_get_arg_type(self._dbobj)
        #end arg_type

        @property
        def element_type(self) :
            assert not self._writing, "cannot read from write iterator"
            return \
                dbus.dbus_message_iter_get_element_type(self._dbobj)
        #end element_type

        def recurse(self) :
            assert not self._writing, "cannot read from write iterator"
            subiter = type(self)(self, False)
            dbus.dbus_message_iter_recurse(self._dbobj, subiter._dbobj)
            return \
                subiter
        #end recurse

        @property
        def signature(self) :
            assert not self._writing, "cannot read from write iterator"
            c_result = dbus.dbus_message_iter_get_signature(self._dbobj)
            if c_result == None :
                raise DBusNoMemory("dbus_message_iter_get_signature failure")
            #end if
            result = ct.cast(c_result, ct.c_char_p).value.decode()
            dbus.dbus_free(c_result)
            return \
                result
        #end signature

        @property
        def basic(self) :
            assert not self._writing, "cannot read from write iterator"
            argtype = self.arg_type
            c_result_type = DBUS.basic_to_ctypes[argtype]
            c_result = c_result_type()
            dbus.dbus_message_iter_get_basic(self._dbobj, ct.byref(c_result))
            if c_result_type == ct.c_char_p :
                result = c_result.value.decode()
            else :
                result = c_result.value
            #end if
            if argtype in _basic_subclasses :
                result = _basic_subclasses[argtype](result)
            #end if
            return \
                result
        #end basic

        def get_object(self, variant_level = 0) :
            "returns the current iterator item as a Python object, recursively" \
            " converting arrays, dicts and structs to Array, Dictionary and Struct." \
            " variant_level is the number of variants already unwrapped to get here."
            assert not self._writing, "cannot read from write iterator"
            argtype = self.arg_type
            if argtype in DBUS.basic_to_ctypes :
                result = self.basic
            elif argtype == DBUS.TYPE_ARRAY :
                signature = self.signature
                if self.element_type == DBUS.TYPE_DICT_ENTRY :
                    entries = []
                    for entry in self.recurse() :
                        assert entry.arg_type == DBUS.TYPE_DICT_ENTRY
                        entries.append(tuple(x.object for x in entry.recurse()))
                    #end for
                    result = Dictionary \
                      (
                        entries,
                        signature = signature[2:-1],
                        variant_level = variant_level
                      )
                else :
                    result = Array \
                      (
                        (x.object for x in self.recurse()),
                        signature = signature[1:],
                        variant_level = variant_level
                      )
                #end if
            elif argtype == DBUS.TYPE_STRUCT :
                result = Struct \
                  (
                    tuple(x.object for x in self.recurse()),
                    signature = self.signature[1:-1],
                    variant_level = variant_level
                  )
            elif argtype == DBUS.TYPE_VARIANT :
                result = next(self.recurse()).get_object(variant_level + 1)
            else :
                raise RuntimeError("unrecognized argtype %d" % argtype)
            #end if
            return \
                result
        #end get_object

        @property
        def object(self) :
            "the current iterator item as a Python object."
            return \
                self.get_object()
        #end object

        def append_basic(self, type, value) :
            assert self._writing, "cannot write to read iterator"
            if type in DBUS.int_convert :
                value = DBUS.int_convert[type](value)
            elif type == DBUS.TYPE_BOOLEAN :
                value = int(bool(value))
            elif type == DBUS.TYPE_DOUBLE :
                value = float(value)
            elif type == DBUS.TYPE_SIGNATURE :
                value = Signature(value)
            #end if
            c_type = DBUS.basic_to_ctypes[type]
            if c_type == ct.c_char_p :
                if not isinstance(value, str) :
                    raise TypeError("str expected for type %s, not %s" % (chr(type), value.__class__.__name__))
                #end if
                value = value.encode()
            #end if
            c_value = c_type(value)
            if not dbus.dbus_message_iter_append_basic(self._dbobj, type, ct.byref(c_value)) :
                raise DBusNoMemory("dbus_message_iter_append_basic failed")
            #end if
            return \
                self
        #end append_basic

        def open_container(self, type, contained_signature) :
            assert self._writing, "cannot write to read iterator"
            if contained_signature != None :
                c_sig = contained_signature.encode()
            else :
                c_sig = None
            #end if
            subiter = self.__class__(self, True)
            if not dbus.dbus_message_iter_open_container(self._dbobj, type, c_sig, subiter._dbobj) :
                raise DBusNoMemory("dbus_message_iter_open_container failed")
            #end if
            return \
                subiter
        #end open_container

        def close(self) :
            assert self._writing, "cannot write to read iterator"
            assert self._parent != None, "cannot close top-level iterator"
            if not dbus.dbus_message_iter_close_container(self._parent._dbobj, self._dbobj) :
                raise DBusNoMemory("dbus_message_iter_close_container failed")
            #end if
            return \
                self._parent
        #end close

        def abandon(self) :
            assert self._writing, "cannot write to read iterator"
            assert self._parent != None, "cannot abandon top-level iterator"
            dbus.dbus_message_iter_abandon_container(self._parent._dbobj, self._dbobj)
            return \
                self._parent
        #end abandon

    #end Iter

    def iter_init(self) :
        iter = self.Iter(None, False)
        if dbus.dbus_message_iter_init(self._dbobj, iter._dbobj) == 0 :
            iter._nulliter = True
        #end if
        return \
             iter
    #end iter_init

    @property
    def objects(self) :
        "yields the message arguments as Python objects."
        for iter in self.iter_init() :
            yield iter.object
        #end for
    #end objects

    @property
    def all_objects(self) :
        "returns a list of all the message arguments as Python objects."
        return \
            list(self.objects)
    #end all_objects

    def iter_init_append(self) :
        iter = self.Iter(None, True)
        dbus.dbus_message_iter_init_append(self._dbobj, iter._dbobj)
        return \
            iter
    #end iter_init_append

    def append_objects(self, signature, val) :
        "interprets Python value val (which should be a sequence of objects) according" \
        " to signature and appends converted items to the message args. If signature" \
        " is None, it is guessed from the values, using the signature and variant_level" \
        " of any Array, Dictionary or Struct among them.\n" \
        "\n" \
        "A value in a variant position is wrapped in as many variants as its variant_level" \
        " says (at least one), with its contents signature guessed from the value."

        def fill_container(subiter, fill) :
            # closes subiter once fill has put its contents in, or abandons it
            # if that fails, so no half-built container is left open.
            try :
                fill()
            except Exception :
                subiter.abandon()
                raise
            #end try
            subiter.close()
        #end fill_container

        def append_sub(val, sigiter, appenditer) :
            index = 0
            for sigelt in sigiter :
                if index >= len(val) :
                    raise ValueError("not enough values for signature")
                #end if
                elttype = sigelt.current_type
                elt = val[index]
                if elttype in DBUS.basic_to_ctypes :
                    appenditer.append_basic(elttype, elt)
                elif elttype == DBUS.TYPE_ARRAY :
                    append_array(elt, sigelt, appenditer)
                elif elttype == DBUS.TYPE_STRUCT :
                    if not isinstance(elt, (tuple, list)) :
                        raise TypeError("expecting sequence of values for struct")
                    #end if
                    subiter = appenditer.open_container(elttype, None)
                    fill_container(subiter, lambda : append_sub(elt, sigelt.recurse(), subiter))
                elif elttype == DBUS.TYPE_VARIANT :
                    append_variant(elt, max(_variant_level_of(elt), 1), appenditer)
                else :
                    raise RuntimeError("unrecognized type %s" % bytes((elttype,)))
                #end if
                index += 1
            #end for
            if index != len(val) :
                raise ValueError("too many values for signature")
            #end if
        #end append_sub

        def append_array(elt, arraysig, appenditer) :
            # arraysig is positioned on the array type; each element walks
            # a fresh iterator over the element type.

            def append_entries() :
                for key, value in elt.items() :
                    entryiter = subiter.open_container(DBUS.TYPE_DICT_ENTRY, None)
                    fill_container(entryiter, lambda : append_sub([key, value], arraysig.recurse().recurse(), entryiter))
                #end for
            #end append_entries

            def append_elements() :
                for subval in elt :
                    append_sub([subval], arraysig.recurse(), subiter)
                #end for
            #end append_elements

        #begin append_array
            if arraysig.element_type == DBUS.TYPE_DICT_ENTRY :
                if not isinstance(elt, dict) :
                    raise TypeError("dict expected for array of dict entry")
                #end if
                fill = append_entries
            else :
                if not isinstance(elt, (tuple, list, bytes, bytearray)) :
                    raise TypeError("expecting sequence of values for array")
                #end if
                fill = append_elements
            #end if
            subiter = appenditer.open_container(DBUS.TYPE_ARRAY, arraysig.recurse().signature)
            fill_container(subiter, fill)
        #end append_array

        def append_variant(elt, levels, appenditer) :
            if levels > 1 :
                subiter = appenditer.open_container(DBUS.TYPE_VARIANT, "v")
                fill_container(subiter, lambda : append_variant(elt, levels - 1, subiter))
            else :
                contents = _guess_unwrapped(elt)
                subiter = appenditer.open_container(DBUS.TYPE_VARIANT, contents)
                fill_container(subiter, lambda : append_sub([elt], SignatureIter.init(contents), subiter))
            #end if
        #end append_variant

    #begin append_objects
        if not isinstance(val, (tuple, list)) :
            val = [val]
        #end if
        if signature == None :
            signature = "".join(guess_signature(elt) for elt in val)
        #end if
        append_sub(val, SignatureIter.init(signature), self.iter_init_append())
        return \
            self
    #end append_objects

    def raise_if_error(self) :
        "if this is an error message, raises a DBusError with its name and the" \
        " accompanying text, if any."
        if self.is_error :
            args = self.all_objects
            if len(args) != 0 and isinstance(args[0], str) :
                text = args[0]
            else :
                text = ""
            #end if
            raise DBusError(self.error_name, text)
        #end if
    #end raise_if_error

#end Message

#+
# Pending calls
#-

host_lock = threading.RLock()
  # held while a reply is decoded and passed to its handler. Other threads
  # can hold it to keep reply handlers from running concurrently with them.

class CallHandle :
    "wrapper around a DBusPendingCall object, exposing the libdbus pending-call" \
    " operations as they are. Do not instantiate directly; a PendingCall takes" \
    " ownership of one of these, and it should not be used by anybody else."
    # <https://dbus.freedesktop.org/doc/api/html/group__DBusPendingCall.html>

    __slots__ = ("__weakref__", "_dbobj", "_wrap_notify", "_wrap_free") # to forestall typos

    def __init__(self, _dbobj) :
        self._dbobj = _dbobj
        self._wrap_notify = None
        self._wrap_free = None
    #end __init__

    def set_notify(self, function, user_data, free_user_data = None) :
        "arranges for function(self, user_data) to be called when the call completes," \
        " and free_user_data(user_data) when libdbus is done with user_data. Returns" \
        " False if libdbus ran out of memory."

        def _wrap_notify(c_pending, c_user_data) :
            function(self, user_data)
        #end _wrap_notify

        def _wrap_free(c_user_data) :
            free_user_data(user_data)
        #end _wrap_free

    #begin set_notify
        if function != None :
            wrap_notify = DBUS.PendingCallNotifyFunction(_wrap_notify)
        else :
            wrap_notify = None
        #end if
        if free_user_data != None :
            wrap_free = DBUS.FreeFunction(_wrap_free)
        else :
            wrap_free = None
        #end if
        result = dbus.dbus_pending_call_set_notify(self._dbobj, wrap_notify, None, wrap_free) != 0
        if result :
            # need to keep references to ctypes-wrapped functions
            # so they don't disappear prematurely
            self._wrap_notify = wrap_notify
            self._wrap_free = wrap_free
        #end if
        return \
            result
    #end set_notify

    def cancel(self) :
        dbus.dbus_pending_call_cancel(self._dbobj)
    #end cancel

    def get_completed(self) :
        return \
            dbus.dbus_pending_call_get_completed(self._dbobj) != 0
    #end get_completed

    def steal_reply(self) :
        "returns the raw DBusMessage pointer for the reply, with the caller now owning" \
        " the reference, or None if there is none (any more)."
        return \
            dbus.dbus_pending_call_steal_reply(self._dbobj)
    #end steal_reply

    def block(self) :
        dbus.dbus_pending_call_block(self._dbobj)
    #end block

    def unref(self) :
        "drops my reference to the DBusPendingCall. The notify function is detached" \
        " first, since libdbus may hold on to the call for longer than I hold on to" \
        " the ctypes wrappers."
        if self._dbobj != None :
            if self._wrap_notify != None or self._wrap_free != None :
                dbus.dbus_pending_call_set_notify(self._dbobj, None, None, None)
                  # the wrappers themselves stay referenced, since this may
                  # be happening inside the notify function
            #end if
            dbus.dbus_pending_call_unref(self._dbobj)
            self._dbobj = None
        #end if
    #end unref

#end CallHandle

class _HandlerSlot :
    # the one owner of a reply handler. Whichever of notification, cancel,
    # teardown or libdbus freeing its user data gets here first takes the
    # handler out; after that the slot is empty for good.

    __slots__ = ("_handler", "_lock")

    def __init__(self, handler) :
        self._handler = handler
        self._lock = threading.Lock()
    #end __init__

    def take(self) :
        with self._lock :
            handler = self._handler
            self._handler = None
        #end with
        return \
            handler
    #end take

#end _HandlerSlot

def _free_handler_slot(slot) :
    slot.take()
#end _free_handler_slot

def _pending_call_notify(handle, slot) :
    # called by libdbus, possibly from its own thread, when the reply has come in.
    with host_lock :
        handler = slot.take()
        reply = handle.steal_reply()
        if reply == None :
            # should only get called when there is a reply
            warnings.warn \
              (
                "D-Bus notify function was called for an incomplete pending call",
                UserWarning
              )
            logger.warning("notify function called for an incomplete pending call")
        else :
            message = Message.consume(reply)
            if handler != None :
                try :
                    handler(message)
                except Exception :
                    logger.exception("Unhandled exception in pending call reply handler")
                #end try
            #end if
        #end if
    #end with
#end _pending_call_notify

class PendingCall :
    "Object representing a pending D-Bus call, returned by Connection.send_with_reply." \
    " Cannot be instantiated directly.\n" \
    "\n" \
    "The reply handler is called with the reply Message, at most once, while holding" \
    " host_lock. Keep a reference to the PendingCall for as long as you want the reply:" \
    " once it is disposed of, the handler is dropped and will not be called."

    __slots__ = ("__weakref__", "_handle", "_slot") # to forestall typos

    def __new__(celf, *args, **kwargs) :
        raise TypeError("%s cannot be instantiated directly" % celf.__name__)
    #end __new__

    @classmethod
    def _consume(celf, handle, handler) :
        # takes ownership of handle, which nobody else may use afterwards.
        self = object.__new__(celf)
        self._handle = None
        self._slot = _HandlerSlot(handler)
        if not handle.set_notify(_pending_call_notify, self._slot, _free_handler_slot) :
            logger.debug("cannot register notify function, abandoning call")
            handle.cancel()
            handle.unref()
            self._slot.take()
            raise DBusNoMemory("dbus_pending_call_set_notify failed")
        #end if
        self._handle = handle
        return \
            self
    #end _consume

    def __del__(self) :
        self.close()
    #end __del__

    def _get_handle(self) :
        if self._handle == None :
            raise ValueError("PendingCall has been closed")
        #end if
        return \
            self._handle
    #end _get_handle

    def cancel(self) :
        "Cancel this pending call. Its reply will be ignored and the associated" \
        " reply handler will never be called. Does nothing if the call has already" \
        " completed."
        if self._handle != None :
            self._handle.cancel()
        #end if
        self._slot.take()
    #end cancel

    def block(self) :
        "Block until this pending call has completed and the associated reply" \
        " handler has been called.\n" \
        "\n" \
        "This can lead to a deadlock if the called method tries to make a synchronous" \
        " call to a method in this application."
        self._get_handle().block()
    #end block

    @property
    def completed(self) :
        "whether this pending call has completed. If so, its reply handler has been" \
        " called and it is no longer meaningful to cancel it."
        return \
            self._get_handle().get_completed()
    #end completed

    def close(self) :
        "releases the underlying call and the reply handler, if not already done." \
        " The handler will not be called after this."
        handle = self._handle
        self._handle = None
        if handle != None :
            handle.unref()
        #end if
        self._slot.take()
    #end close

#end PendingCall

#+
# Connections
#-

class Connection :
    "minimal wrapper around a DBusConnection object, enough to send messages and" \
    " get replies. Do not instantiate directly; use the bus_get method."
    # <https://dbus.freedesktop.org/doc/api/html/group__DBusConnection.html>

    __slots__ = ("__weakref__", "_dbobj") # to forestall typos

    _instances = WeakValueDictionary()

    def __new__(celf, _dbobj) :
        self = celf._instances.get(_dbobj)
        if self == None :
            self = super().__new__(celf)
            self._dbobj = _dbobj
            celf._instances[_dbobj] = self
        else :
            dbus.dbus_connection_unref(self._dbobj)
              # lose extra reference created by caller
        #end if
        return \
            self
    #end __new__

    def __del__(self) :
        if self._dbobj != None :
            dbus.dbus_connection_unref(self._dbobj)
            self._dbobj = None
        #end if
    #end __del__

    @classmethod
    def bus_get(celf, type, private) :
        "type is a BUS_xxx value."
        error = Error()
        result = (dbus.dbus_bus_get, dbus.dbus_bus_get_private)[private](type, error._dbobj)
        error.raise_if_set()
        if result != None :
            result = celf(result)
        #end if
        return \
            result
    #end bus_get

    def close(self) :
        dbus.dbus_connection_close(self._dbobj)
    #end close

    @property
    def is_connected(self) :
        return \
            dbus.dbus_connection_get_is_connected(self._dbobj) != 0
    #end is_connected

    def send(self, message) :
        "queues message for sending, returning its serial number."
        if not isinstance(message, Message) :
            raise TypeError("message must be a Message")
        #end if
        serial = ct.c_uint()
        if not dbus.dbus_connection_send(self._dbobj, message._dbobj, ct.byref(serial)) :
            raise DBusNoMemory("dbus_connection_send failed")
        #end if
        return \
            serial.value
    #end send

    def send_with_reply(self, message, reply_handler, timeout = DBUS.TIMEOUT_USE_DEFAULT) :
        "queues message for sending, and returns a PendingCall that will pass the" \
        " reply Message to reply_handler. Returns None if the connection is" \
        " disconnected, in which case reply_handler will never be called."
        if not isinstance(message, Message) :
            raise TypeError("message must be a Message")
        #end if
        pending_call = ct.c_void_p()
        if not dbus.dbus_connection_send_with_reply(self._dbobj, message._dbobj, ct.byref(pending_call), _get_timeout(timeout)) :
            raise DBusNoMemory("dbus_connection_send_with_reply failed")
        #end if
        if pending_call.value != None :
            result = PendingCall._consume(CallHandle(pending_call.value), reply_handler)
        else :
            result = None
        #end if
        return \
            result
    #end send_with_reply

    def send_with_reply_and_block(self, message, timeout = DBUS.TIMEOUT_USE_DEFAULT) :
        "sends message and waits for the reply, raising DBusError if it is an error."
        if not isinstance(message, Message) :
            raise TypeError("message must be a Message")
        #end if
        error = Error()
        reply = dbus.dbus_connection_send_with_reply_and_block(self._dbobj, message._dbobj, _get_timeout(timeout), error._dbobj)
        error.raise_if_set()
        if reply != None :
            result = Message(reply)
        else :
            result = None
        #end if
        return \
            result
    #end send_with_reply_and_block

    def flush(self) :
        dbus.dbus_connection_flush(self._dbobj)
    #end flush

    def read_write_dispatch(self, timeout) :
        "does a round of I/O and dispatching, returning False once the connection" \
        " has been disconnected."
        return \
            dbus.dbus_connection_read_write_dispatch(self._dbobj, _get_timeout(timeout)) != 0
    #end read_write_dispatch

#end Connection

#+
# Cleanup
#-

def _atexit() :
    # disable all __del__ methods at process termination to avoid segfaults
    for cls in Connection, Message, PendingCall, Error :
        delattr(cls, "__del__")
    #end for
#end _atexit
atexit.register(_atexit)
del _atexit
