from marshmallow import Schema, fields, validate, validates_schema, ValidationError, EXCLUDE

PORT_RANGE = validate.Range(min=1, max=65535)


class TunnelConfigSchema(Schema):
	"""
	Validates the content of a relaytunnel configuration file.
	Unknown keys are ignored so old configuration files keep working after keys are removed.
	"""
	class Meta:
		unknown = EXCLUDE

	relay_host = fields.String(required=True, validate=validate.Length(min=1))
	relay_port = fields.Integer(load_default=22, validate=PORT_RANGE)
	username = fields.String(required=True, validate=validate.Length(min=1))
	password = fields.String(load_default=None, allow_none=True)
	encrypted_password = fields.String(load_default=None, allow_none=True)
	client_keys = fields.List(fields.String(), load_default=None, allow_none=True)
	auth_plugin = fields.String(load_default=None, allow_none=True)
	auth_data = fields.Dict(keys=fields.String(), load_default=dict)
	host_key = fields.String(load_default=None, allow_none=True)
	host_key_path = fields.String(load_default=None, allow_none=True)
	remote_host = fields.String(load_default='0.0.0.0')
	# 0 lets the relay choose a port
	remote_port = fields.Integer(load_default=0, validate=validate.Range(min=0, max=65535))
	target_host = fields.String(load_default='127.0.0.1')
	target_port = fields.Integer(required=True, validate=PORT_RANGE)
	hide_banner = fields.Boolean(load_default=False)
	proxy_url = fields.String(load_default=None, allow_none=True)
	encrypted_proxy_url = fields.String(load_default=None, allow_none=True)
	control_command = fields.String(load_default=None, allow_none=True)
	connect_timeout = fields.Float(load_default=30, validate=validate.Range(min=0, min_inclusive=False))
	target_connect_timeout = fields.Float(load_default=10, validate=validate.Range(min=0, min_inclusive=False))
	reconnect_delay = fields.Float(load_default=5, validate=validate.Range(min=0))

	@validates_schema
	def validate_host_key(self, data, **kwargs):
		if bool(data.get('host_key')) == bool(data.get('host_key_path')):
			raise ValidationError('Exactly one of `host_key` or `host_key_path` must be given', 'host_key')

	@validates_schema
	def validate_auth(self, data, **kwargs):
		auth_methods = [key for key in ('password', 'encrypted_password', 'client_keys', 'auth_plugin') if data.get(key)]
		if len(auth_methods) != 1:
			raise ValidationError('Exactly one of `password`, `encrypted_password`, `client_keys` or `auth_plugin` must be given', 'password')

	@validates_schema
	def validate_proxy(self, data, **kwargs):
		if data.get('proxy_url') and data.get('encrypted_proxy_url'):
			raise ValidationError('`proxy_url` and `encrypted_proxy_url` cannot be used together', 'proxy_url')
