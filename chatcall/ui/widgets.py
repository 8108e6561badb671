from __future__ import annotations

from PySide6 import QtCore, QtWidgets


class LogPanel(QtWidgets.QPlainTextEdit):
	def __init__(self, parent=None):
		super().__init__(parent)
		self.setReadOnly(True)
		self.setMaximumBlockCount(2000)

	@QtCore.Slot(str)
	def append_log(self, message: str) -> None:
		self.appendPlainText(message)


class CallCard(QtWidgets.QFrame):
	"""Remote participant, call status and mic state."""

	def __init__(self, parent=None):
		super().__init__(parent)
		self.setFrameShape(QtWidgets.QFrame.Shape.StyledPanel)
		self.setFrameShadow(QtWidgets.QFrame.Shadow.Raised)

		self._avatar = QtWidgets.QLabel("?")
		self._avatar.setAlignment(QtCore.Qt.AlignmentFlag.AlignCenter)
		self._avatar.setFixedSize(72, 72)
		self._avatar.setStyleSheet("border-radius: 36px; background: palette(midlight); font-size: 28px;")

		self._peer = QtWidgets.QLabel("-")
		font = self._peer.font()
		font.setBold(True)
		font.setPointSize(font.pointSize() + 4)
		self._peer.setFont(font)

		self._status = QtWidgets.QLabel("Idle")
		self._mic = QtWidgets.QLabel("Mic on")

		layout = QtWidgets.QVBoxLayout(self)
		layout.setContentsMargins(16, 16, 16, 16)
		layout.setSpacing(6)
		layout.addWidget(self._avatar, 0, QtCore.Qt.AlignmentFlag.AlignHCenter)
		for label in (self._peer, self._status, self._mic):
			label.setAlignment(QtCore.Qt.AlignmentFlag.AlignCenter)
			label.setWordWrap(False)
			layout.addWidget(label)

	@QtCore.Slot(str)
	def set_peer(self, name: str) -> None:
		name = name.strip()
		self._peer.setText(name or "-")
		self._avatar.setText(name[:1].upper() if name else "?")

	@QtCore.Slot(str)
	def set_status(self, text: str) -> None:
		self._status.setText(text.strip() or "-")

	@QtCore.Slot(bool)
	def set_muted(self, muted: bool) -> None:
		self._mic.setText("Muted" if muted else "Mic on")

	def status_text(self) -> str:
		return self._status.text()
