"""
QR code generation module.
Encodes a peer's config text or vpn:// link as a PNG image.
"""
import io
import qrcode


class QrCodeEncoder:
    def __init__(self, box_size: int = 4, border: int = 8):
        self.box_size = box_size
        self.border = border

    def encode(self, payload: str) -> bytes:
        """
        Generate a QR code PNG from a config text or link.

        Args:
            payload: The string to encode

        Returns:
            PNG image bytes
        """
        qr = qrcode.QRCode(
            version=None,  # Auto-determine size
            error_correction=qrcode.constants.ERROR_CORRECT_L,
            box_size=self.box_size,
            border=self.border,
        )
        qr.add_data(payload)
        qr.make(fit=True)

        img = qr.make_image(fill_color="black", back_color="white")

        buffer = io.BytesIO()
        img.save(buffer, format="PNG")
        return buffer.getvalue()
