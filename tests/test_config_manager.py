import base64
import json
import struct
import tempfile
import unittest
import zlib
from pathlib import Path
from unittest.mock import MagicMock

from awg_params import AdvancedSecurityParams
from config import Config
from config_manager import ConfigFileManager, strip_config_comments
from domain import ConfigOption, ConfigStyle, Interface, KeyPair, Peer, RequestContext, UserInfo, generate_keypair
from errors import AuthorizationError, ContextCancelledError
from events import EventBus, Topic


def make_interface(identifier='awg0', advanced_security=None, save_config=True):
    priv, pub = generate_keypair()
    return Interface(
        identifier=identifier,
        display_name='Office',
        key_pair=KeyPair(priv, pub),
        listen_port=51820,
        addresses=['10.11.12.1/24'],
        save_config=save_config,
        advanced_security=advanced_security,
    )


def make_peer(interface_identifier='awg0', user_identifier='alice'):
    priv, pub = generate_keypair()
    return Peer(
        identifier='laptop',
        interface_identifier=interface_identifier,
        display_name='Laptop',
        user_identifier=user_identifier,
        key_pair=KeyPair(priv, pub),
        addresses=['10.11.12.2/32'],
        endpoint=ConfigOption('vpn.example.com:51820'),
        dns=ConfigOption('1.1.1.1'),
    )


class ManagerTestCase(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.cfg = Config()
        self.cfg.CONFIG_STORAGE_PATH = str(Path(self.tmpdir.name) / 'configs')
        self.cfg.LINK_COMPRESSION_LEVEL = 8

        self.bus = EventBus()
        self.repo = MagicMock()
        self.fs = MagicMock()
        self.qr = MagicMock()
        self.qr.encode.return_value = b'PNG'

        self.iface = make_interface(advanced_security=AdvancedSecurityParams(jc=4, jmin=50, jmax=1000, h1='0x10'))
        self.peer = make_peer()
        self.repo.get_interface.return_value = self.iface
        self.repo.get_peer.return_value = self.peer
        self.repo.get_interface_and_peers.return_value = (self.iface, [self.peer])

        self.manager = ConfigFileManager(self.cfg, self.bus, self.repo, self.fs, qr_encoder=self.qr)

    def tearDown(self):
        self.tmpdir.cleanup()


class TestEvents(ManagerTestCase):

    def test_storage_directory_created(self):
        self.assertTrue(Path(self.cfg.CONFIG_STORAGE_PATH).is_dir())

    def test_created_and_updated_persist(self):
        for topic in (Topic.INTERFACE_CREATED, Topic.INTERFACE_UPDATED):
            self.fs.reset_mock()
            with self.subTest(topic=topic):
                self.bus.publish(topic, self.iface)
                self.fs.write_file.assert_called_once()
                path, contents = self.fs.write_file.call_args.args
                self.assertEqual(path, 'awg0.conf')
                self.assertIn('[Interface]', contents)
                self.assertIn('Jc = 4', contents)
                self.assertIn(self.peer.key_pair.public_key, contents)

    def test_deleted_removes_file(self):
        self.bus.publish(Topic.INTERFACE_DELETED, self.iface)
        self.fs.delete_file.assert_called_once_with('awg0.conf')

    def test_save_config_false_is_ignored(self):
        iface = make_interface(save_config=False)
        self.bus.publish(Topic.INTERFACE_CREATED, iface)
        self.bus.publish(Topic.INTERFACE_DELETED, iface)
        self.fs.write_file.assert_not_called()
        self.fs.delete_file.assert_not_called()

    def test_peer_interface_updated_reloads_interface(self):
        self.bus.publish(Topic.PEER_INTERFACE_UPDATED, 'awg0')
        self.repo.get_interface.assert_called_once()
        self.assertEqual(self.repo.get_interface.call_args.args[1], 'awg0')
        self.fs.write_file.assert_called_once()

    def test_handler_errors_are_logged(self):
        self.fs.write_file.side_effect = OSError('read-only file system')
        with self.assertLogs('config_manager', level='ERROR') as logs:
            self.bus.publish(Topic.INTERFACE_UPDATED, self.iface)
        self.assertIn('read-only file system', logs.output[0])

        self.repo.get_interface.side_effect = LookupError('gone')
        with self.assertLogs('config_manager', level='ERROR'):
            self.bus.publish(Topic.PEER_INTERFACE_UPDATED, 'awg0')

    def test_no_subscriptions_without_storage_path(self):
        cfg = Config()
        cfg.CONFIG_STORAGE_PATH = ''
        bus = EventBus()
        fs = MagicMock()
        ConfigFileManager(cfg, bus, self.repo, fs, qr_encoder=self.qr)
        bus.publish(Topic.INTERFACE_CREATED, self.iface)
        fs.write_file.assert_not_called()


class TestExports(ManagerTestCase):

    def test_interface_config_requires_admin(self):
        ctx = RequestContext(UserInfo(identifier='alice'))
        with self.assertRaises(AuthorizationError):
            self.manager.get_interface_config(ctx, 'awg0')
        self.repo.get_interface_and_peers.assert_not_called()

        text = self.manager.get_interface_config(RequestContext.system(), 'awg0')
        self.assertTrue(text.startswith('# Office\n[Interface]\n'))

    def test_peer_config_has_name_header(self):
        text = self.manager.get_peer_config(RequestContext.system(), 'laptop')
        self.assertTrue(text.startswith('# Name = Office - Laptop\n[Interface]\n'))
        self.assertIn('Address = 10.11.12.2/32', text)
        self.assertIn('Jc = 4', text)
        self.assertIn(f'PublicKey = {self.iface.key_pair.public_key}', text)

    def test_raw_style_omits_wg_quick_fields(self):
        text = self.manager.get_peer_config(RequestContext.system(), 'laptop', ConfigStyle.RAW)
        self.assertNotIn('Address = ', text)
        self.assertNotIn('DNS = ', text)

    def test_peer_config_owner_access(self):
        self.manager.get_peer_config(RequestContext(UserInfo(identifier='alice')), 'laptop')

        with self.assertRaises(AuthorizationError):
            self.manager.get_peer_config(RequestContext(UserInfo(identifier='bob')), 'laptop')

    def test_display_name(self):
        ctx = RequestContext.system()
        self.assertEqual(self.manager.get_peer_display_name(ctx, None), '')
        self.assertEqual(self.manager.get_peer_display_name(ctx, self.peer), 'Office - Laptop')

        self.iface.display_name = ''
        self.peer.display_name = ' '
        self.assertEqual(self.manager.get_peer_display_name(ctx, self.peer), 'awg0 - laptop')

    def test_qr_payload_is_link_for_amneziawg(self):
        payload = self.manager.get_peer_qr_payload(RequestContext.system(), 'laptop')
        self.assertTrue(payload.startswith('vpn://'))

        body = payload[len('vpn://'):]
        framed = base64.urlsafe_b64decode(body + '=' * (-len(body) % 4))
        envelope = json.loads(zlib.decompress(framed[4:]))
        self.assertEqual(struct.unpack('>I', framed[:4])[0], len(zlib.decompress(framed[4:])))
        self.assertEqual(envelope['description'], 'Office - Laptop')

        last = json.loads(envelope['containers'][0]['awg']['last_config'])
        self.assertTrue(last['config'].startswith('# Name = Office - Laptop\n[Interface]\n'))
        self.assertNotIn('# AmneziaWG', last['config'])
        self.assertIn('Jc = 4', last['config'])

    def test_link_config_matches_allowed_ips(self):
        link = self.manager.get_peer_vpn_link(RequestContext.system(), 'laptop')
        body = link[len('vpn://'):]
        framed = base64.urlsafe_b64decode(body + '=' * (-len(body) % 4))
        envelope = json.loads(zlib.decompress(framed[4:]))
        last = json.loads(envelope['containers'][0]['awg']['last_config'])

        self.assertEqual(last['allowed_ips'], ['0.0.0.0/0', '::/0'])
        self.assertIn('AllowedIPs = 0.0.0.0/0, ::/0\n', last['config'])

    def test_qr_payload_is_config_for_native(self):
        iface = make_interface()
        self.repo.get_interface.return_value = iface

        payload = self.manager.get_peer_qr_payload(RequestContext.system(), 'laptop')

        self.assertTrue(payload.startswith('[Interface]\n'))
        self.assertNotIn('#', payload)
        self.assertNotIn('Jc = ', payload)

    def test_qr_code_uses_encoder(self):
        png = self.manager.get_peer_config_qr_code(RequestContext.system(), 'laptop')
        self.assertEqual(png, b'PNG')
        self.assertTrue(self.qr.encode.call_args.args[0].startswith('vpn://'))

    def test_vpn_link(self):
        link = self.manager.get_peer_vpn_link(RequestContext.system(), 'laptop')
        self.assertTrue(link.startswith('vpn://'))

    def test_cancelled_context_stops_before_repository(self):
        ctx = RequestContext.system()
        ctx.cancel()
        with self.assertRaises(ContextCancelledError):
            self.manager.get_peer_config(ctx, 'laptop')
        with self.assertRaises(ContextCancelledError):
            self.manager.persist_interface_config(ctx, 'awg0')
        with self.assertRaises(ContextCancelledError):
            self.manager.unpersist_interface_config(ctx, 'awg0.conf')
        self.repo.get_peer.assert_not_called()
        self.repo.get_interface_and_peers.assert_not_called()
        self.fs.delete_file.assert_not_called()


class TestStripComments(unittest.TestCase):

    def test_strip(self):
        text = '# old\n[Interface]\n  # note\nPrivateKey = x\n'
        self.assertEqual(strip_config_comments(text), '[Interface]\nPrivateKey = x\n')
        self.assertEqual(strip_config_comments(text, 'wg0 - a'), '# Name = wg0 - a\n[Interface]\nPrivateKey = x\n')


if __name__ == '__main__':
    unittest.main()
