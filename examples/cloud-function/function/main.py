import functions_framework


@functions_framework.http
def hello_http(request):
    """Respond with a greeting, using ?name= when given."""
    name = request.args.get('name', 'World')
    return f'Hello {name}!'
