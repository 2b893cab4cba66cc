import base64
import json
import struct
import unittest
import zlib

import amnezia_link
from amnezia_link import (
    build_amnezia_vpn_link, parse_endpoint_host_port, pick_dns_servers, qt_compress, split_csv_or_default,
)
from awg_params import AdvancedSecurityParams
from domain import ConfigOption, Interface, KeyPair, Peer, generate_keypair
from errors import PreconditionError, SerializationError


def decode_link(link):
    """Undo the vpn:// encoding and return the envelope dict"""
    assert link.startswith('vpn://')
    payload = link[len('vpn://'):]
    framed = base64.urlsafe_b64decode(payload + '=' * (-len(payload) % 4))
    size = struct.unpack('>I', framed[:4])[0]
    data = zlib.decompress(framed[4:])
    assert size == len(data)
    return json.loads(data)


def make_interface(advanced_security=None):
    priv, pub = generate_keypair()
    return Interface(
        identifier='awg0',
        display_name='Office',
        key_pair=KeyPair(priv, pub),
        listen_port=51820,
        addresses=['10.11.12.1/24'],
        advanced_security=advanced_security,
    )


def make_peer(**options):
    priv, pub = generate_keypair()
    peer = Peer(
        identifier='laptop',
        interface_identifier='awg0',
        display_name='Laptop',
        key_pair=KeyPair(priv, pub),
        preshared_key=' psk== ',
        addresses=['10.11.12.2/32'],
    )
    for name, value in options.items():
        setattr(peer, name, ConfigOption(value))
    return peer


class TestHelpers(unittest.TestCase):

    def test_parse_endpoint_host_port(self):
        cases = {
            None: ('127.0.0.1', 51820),
            '': ('127.0.0.1', 51820),
            '   ': ('127.0.0.1', 51820),
            '192.168.1.1': ('192.168.1.1', 51820),
            '192.168.1.1:51821': ('192.168.1.1', 51821),
            '[::1]:51821': ('::1', 51821),
            'vpn.example.com:443': ('vpn.example.com', 443),
            ':51821': ('127.0.0.1', 51821),
            'vpn.example.com:abc': ('vpn.example.com', 51820),
        }
        for endpoint, expected in cases.items():
            with self.subTest(endpoint=endpoint):
                self.assertEqual(parse_endpoint_host_port(endpoint), expected)

    def test_pick_dns_servers(self):
        self.assertEqual(pick_dns_servers(''), ('1.1.1.1', '1.0.0.1'))
        self.assertEqual(pick_dns_servers(None), ('1.1.1.1', '1.0.0.1'))
        self.assertEqual(pick_dns_servers('8.8.8.8'), ('8.8.8.8', '1.0.0.1'))
        self.assertEqual(pick_dns_servers('8.8.8.8,8.8.4.4'), ('8.8.8.8', '8.8.4.4'))
        self.assertEqual(pick_dns_servers('8.8.8.8, 8.8.4.4, 9.9.9.9'), ('8.8.8.8', '8.8.4.4'))

    def test_split_csv_or_default(self):
        self.assertEqual(split_csv_or_default('', 'a,b'), ['a', 'b'])
        self.assertEqual(split_csv_or_default('   ', 'a,b'), ['a', 'b'])
        self.assertEqual(split_csv_or_default('x,,y', 'a'), ['x', 'y'])
        self.assertEqual(split_csv_or_default(' 10.0.0.0/8 , 192.168.0.0/16 ', 'a'),
                         ['10.0.0.0/8', '192.168.0.0/16'])

    def test_qt_compress_framing(self):
        for data in (b'', b'hello', bytes(range(256)) * 40):
            with self.subTest(size=len(data)):
                framed = qt_compress(data)
                self.assertEqual(framed[:4], struct.pack('>I', len(data)))
                self.assertEqual(zlib.decompress(framed[4:]), data)

    def test_qt_compress_level_does_not_change_content(self):
        data = b'{"a":"' + b'x' * 500 + b'"}'
        self.assertEqual(zlib.decompress(qt_compress(data, 1)[4:]), zlib.decompress(qt_compress(data, 9)[4:]))

    def test_qt_compress_bad_level(self):
        with self.assertRaises(SerializationError):
            qt_compress(b'data', 42)


class TestBuildLink(unittest.TestCase):

    def setUp(self):
        self.params = AdvancedSecurityParams(jc=4, jmin=50, jmax=1000, s1=52, s2=64,
                                             h1='0x1', h2='0x2', h3='0x3', h4='0x4')
        self.iface = make_interface(self.params)

    def test_envelope(self):
        peer = make_peer(endpoint='vpn.example.com:51821', dns='8.8.8.8', mtu=1380)
        link = build_amnezia_vpn_link(peer, self.iface, 'Office - Laptop', '[Interface]\n')
        envelope = decode_link(link)

        self.assertEqual(envelope['defaultContainer'], 'amnezia-awg')
        self.assertEqual(envelope['description'], 'Office - Laptop')
        self.assertEqual(envelope['dns1'], '8.8.8.8')
        self.assertEqual(envelope['dns2'], '1.0.0.1')
        self.assertEqual(envelope['hostName'], 'vpn.example.com')
        self.assertEqual(len(envelope['containers']), 1)

        container = envelope['containers'][0]
        self.assertEqual(container['container'], 'amnezia-awg')
        awg = container['awg']
        self.assertEqual(awg['port'], '51821')
        self.assertEqual(awg['transport_proto'], 'udp')
        self.assertEqual(awg['Jc'], '4')
        self.assertEqual(awg['H1'], '0x1')

        last = json.loads(awg['last_config'])
        self.assertEqual(last['port'], 51821)
        self.assertEqual(last['hostName'], 'vpn.example.com')
        self.assertEqual(last['mtu'], '1380')
        self.assertEqual(last['persistent_keep_alive'], '25')
        self.assertEqual(last['allowed_ips'], ['0.0.0.0/0', '::/0'])
        self.assertEqual(last['client_ip'], '10.11.12.2')
        self.assertEqual(last['client_priv_key'], peer.key_pair.private_key)
        self.assertEqual(last['client_pub_key'], peer.key_pair.public_key)
        self.assertEqual(last['clientId'], peer.key_pair.public_key)
        self.assertEqual(last['psk_key'], 'psk==')
        self.assertEqual(last['config'], '[Interface]\n')
        self.assertEqual(last['S2'], '64')

    def test_link_alphabet(self):
        link = build_amnezia_vpn_link(make_peer(), self.iface, 'x', 'cfg')
        body = link[len('vpn://'):]
        self.assertNotIn('=', body)
        self.assertNotIn('+', body)
        self.assertNotIn('/', body)

    def test_server_key_falls_back_to_interface(self):
        last = json.loads(decode_link(build_amnezia_vpn_link(make_peer(), self.iface, 'x', 'cfg'))
                          ['containers'][0]['awg']['last_config'])
        self.assertEqual(last['server_pub_key'], self.iface.key_pair.public_key)

        peer = make_peer(endpoint_public_key='serverkey=')
        last = json.loads(decode_link(build_amnezia_vpn_link(peer, self.iface, 'x', 'cfg'))
                          ['containers'][0]['awg']['last_config'])
        self.assertEqual(last['server_pub_key'], 'serverkey=')

    def test_optional_fields_omitted(self):
        awg = decode_link(build_amnezia_vpn_link(make_peer(), self.iface, 'x', 'cfg'))['containers'][0]['awg']
        for key in ('S3', 'S4', 'I1', 'I2', 'I3', 'I4', 'I5'):
            self.assertNotIn(key, awg)

        self.iface.advanced_security = AdvancedSecurityParams(jc=1, jmin=1, jmax=2, s3=10, i2='<r 8>', i3='  ')
        awg = decode_link(build_amnezia_vpn_link(make_peer(), self.iface, 'x', 'cfg'))['containers'][0]['awg']
        self.assertEqual(awg['S3'], '10')
        self.assertEqual(awg['I2'], '<r 8>')
        self.assertNotIn('S4', awg)
        self.assertNotIn('I3', awg)

        last = json.loads(awg['last_config'])
        self.assertEqual(last['I2'], '<r 8>')
        self.assertNotIn('I3', last)

    def test_deterministic(self):
        peer = make_peer(endpoint='1.2.3.4:5000')
        first = build_amnezia_vpn_link(peer, self.iface, 'x', 'cfg')
        second = build_amnezia_vpn_link(peer, self.iface, 'x', 'cfg')
        self.assertEqual(first, second)

        other_level = build_amnezia_vpn_link(peer, self.iface, 'x', 'cfg', compression_level=1)
        self.assertEqual(decode_link(other_level), decode_link(first))

    def test_preconditions(self):
        with self.assertRaises(PreconditionError):
            build_amnezia_vpn_link(None, self.iface, 'x', 'cfg')

        with self.assertRaises(PreconditionError):
            build_amnezia_vpn_link(make_peer(), make_interface(), 'x', 'cfg')

        with self.assertRaises(PreconditionError):
            build_amnezia_vpn_link(make_peer(), make_interface(AdvancedSecurityParams()), 'x', 'cfg')

    def test_serialization_error_wraps_cause(self):
        with self.assertRaises(SerializationError) as ctx:
            amnezia_link._to_json({'bad': object()})
        self.assertIsInstance(ctx.exception.__cause__, TypeError)


if __name__ == '__main__':
    unittest.main()
